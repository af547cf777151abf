import hashlib
import json

import pytest
import requests

from notesync.exceptions import AuthError, NetworkError, SyncError
from notesync.providers.dropbox import client as client_module
from notesync.providers.dropbox.client import DropboxClient, content_hash, parse_timestamp


class _FakeAuth:
    def __init__(self):
        self.forced = 0

    def ensure_access_token(self):
        return "t1"

    def refresh(self, force=False):
        self.forced += 1
        return {"access_token": "t2"}


class _FakeResponse:
    def __init__(self, status_code: int, payload=None, content: bytes = b""):
        self.status_code = status_code
        self._payload = payload
        self.content = content
        self.text = content.decode("utf-8", errors="replace")

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def __call__(self, url, headers=None, data=None, timeout=None):
        self.calls.append({"url": url, "headers": dict(headers or {}), "data": data})
        if not self.responses:
            raise AssertionError(f"unexpected request to {url}")
        return self.responses.pop(0)

    def body(self, index: int) -> dict:
        return json.loads(self.calls[index]["data"])


def _client(monkeypatch, *responses, remote_root="Notes"):
    http = _FakeHttp(*responses)
    monkeypatch.setattr(client_module.requests, "post", http)
    auth = _FakeAuth()
    return DropboxClient(auth, remote_root=remote_root), http, auth


def test_content_hash_matches_block_scheme():
    expected = hashlib.sha256(hashlib.sha256(b"abc").digest()).hexdigest()
    assert content_hash("abc") == expected
    assert content_hash(b"abc") == expected


def test_parse_timestamp_to_ms():
    assert parse_timestamp("1970-01-01T00:00:01Z") == 1000
    assert parse_timestamp(None) == 0


def test_unauthorized_request_retries_once_with_refreshed_token(monkeypatch):
    client, http, auth = _client(
        monkeypatch,
        _FakeResponse(401),
        _FakeResponse(200, {"name": "f.md"}),
    )

    client.upload("f.md", "body")

    assert auth.forced == 1
    assert [c["headers"]["Authorization"] for c in http.calls] == ["Bearer t1", "Bearer t2"]
    arg = json.loads(http.calls[1]["headers"]["Dropbox-API-Arg"])
    assert arg["path"] == "/Notes/f.md"
    assert arg["mode"] == "overwrite"
    assert http.calls[1]["data"] == b"body"


def test_second_unauthorized_is_auth_error(monkeypatch):
    client, _, _ = _client(monkeypatch, _FakeResponse(401), _FakeResponse(401))
    with pytest.raises(AuthError):
        client.delete("f.md")


def test_server_errors_and_transport_failures_are_network_errors(monkeypatch):
    client, _, _ = _client(monkeypatch, _FakeResponse(503), _FakeResponse(429))
    with pytest.raises(NetworkError):
        client.delete("a.md")
    with pytest.raises(NetworkError):
        client.delete("a.md")

    def _boom(*_args, **_kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(client_module.requests, "post", _boom)
    with pytest.raises(NetworkError):
        client.download("a.md")


def test_other_client_errors_are_sync_errors(monkeypatch):
    client, _, _ = _client(monkeypatch, _FakeResponse(400, {"error_summary": "bad_input"}))
    with pytest.raises(SyncError, match="bad_input"):
        client.delete("a.md")


def test_move_reports_missing_source(monkeypatch):
    client, http, _ = _client(monkeypatch, _FakeResponse(409, {"error_summary": "from_lookup/not_found/.."}))

    assert client.move("A.md", "B.md") == "missing"
    assert http.body(0)["from_path"] == "/Notes/A.md"
    assert http.body(0)["to_path"] == "/Notes/B.md"


def test_move_replaces_existing_target(monkeypatch):
    client, http, _ = _client(
        monkeypatch,
        _FakeResponse(409, {"error_summary": "to/conflict/file/.."}),
        _FakeResponse(200, {"metadata": {}}),
        _FakeResponse(200, {"metadata": {}}),
    )

    assert client.move("A.md", "B.md") == "replaced"
    assert [c["url"].rsplit("/2/", 1)[-1] for c in http.calls] == ["files/move_v2", "files/delete_v2", "files/move_v2"]
    assert http.body(1) == {"path": "/Notes/B.md"}


def test_delete_of_missing_path_is_false(monkeypatch):
    client, _, _ = _client(
        monkeypatch,
        _FakeResponse(409, {"error_summary": "path_lookup/not_found/"}),
        _FakeResponse(200, {"metadata": {}}),
    )
    assert client.delete("gone.md") is False
    assert client.delete("there.md") is True


def test_list_tree_follows_cursor_and_strips_root(monkeypatch):
    first = {
        "entries": [
            {".tag": "folder", "path_display": "/Notes/Work"},
            {".tag": "folder", "path_display": "/Notes/Work/2024"},
            {
                ".tag": "file",
                "path_display": "/Notes/Work/2024/Foo.md",
                "name": "Foo.md",
                "server_modified": "1970-01-01T00:00:02Z",
                "content_hash": "h1",
                "size": 4,
            },
        ],
        "has_more": True,
        "cursor": "c1",
    }
    second = {
        "entries": [{".tag": "file", "path_display": "/Notes/Top.md", "name": "Top.md", "content_hash": "h2"}],
        "has_more": False,
    }
    client, http, _ = _client(monkeypatch, _FakeResponse(200, first), _FakeResponse(200, second))

    files, folders = client.list_tree()

    assert http.body(0) == {"path": "/Notes", "recursive": True, "include_deleted": False}
    assert http.body(1) == {"cursor": "c1"}
    assert folders == ["Work", "Work/2024"]
    assert [f["path"] for f in files] == ["Work/2024/Foo.md", "Top.md"]
    assert files[0]["server_modified"] == 2000
    assert files[0]["content_hash"] == "h1"


def test_list_tree_of_missing_root_is_empty(monkeypatch):
    client, _, _ = _client(monkeypatch, _FakeResponse(409, {"error_summary": "path/not_found/"}))
    assert client.list_tree() == ([], [])


def test_download_decodes_body(monkeypatch):
    client, http, _ = _client(monkeypatch, _FakeResponse(200, None, "héllo".encode("utf-8")), remote_root="")

    assert client.download("Foo.md") == "héllo"
    assert json.loads(http.calls[0]["headers"]["Dropbox-API-Arg"]) == {"path": "/Foo.md"}


def test_list_tree_skips_the_listed_root_entry(monkeypatch):
    page = {
        "entries": [
            {".tag": "folder", "path_display": "/Notes", "path_lower": "/notes"},
            {".tag": "file", "path_display": "/Notes/A.md", "name": "A.md", "content_hash": "h"},
        ],
        "has_more": False,
    }
    client, _, _ = _client(monkeypatch, _FakeResponse(200, page))

    files, folders = client.list_tree()

    assert folders == []
    assert [f["path"] for f in files] == ["A.md"]
