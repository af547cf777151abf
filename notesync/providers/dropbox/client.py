import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any

import requests

from notesync.exceptions import AuthError, NetworkError, SyncError

API_BASE = "https://api.dropboxapi.com/2"
CONTENT_BASE = "https://content.dropboxapi.com/2"

HASH_BLOCK_SIZE = 4 * 1024 * 1024

logger = logging.getLogger("dropbox")


def content_hash(data: bytes | str) -> str:
    """Dropbox content hash: sha256 over the sha256 digests of 4MB blocks."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    outer = hashlib.sha256()
    for start in range(0, len(data), HASH_BLOCK_SIZE):
        outer.update(hashlib.sha256(data[start : start + HASH_BLOCK_SIZE]).digest())
    return outer.hexdigest()


def parse_timestamp(value: str | None) -> int:
    """``2024-01-02T03:04:05Z`` to epoch milliseconds; 0 when absent."""
    if not value:
        return 0
    dt = datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _error_summary(res: requests.Response) -> str:
    try:
        body = res.json()
    except ValueError:
        return (res.text or "").strip()[:200]
    if isinstance(body, dict):
        return str(body.get("error_summary") or "")
    return ""


class DropboxClient:
    """File tree operations relative to ``remote_root``.

    Paths handed in and returned carry no leading slash (``Work/Foo.md``).
    """

    def __init__(self, auth, remote_root: str = "", timeout: int = 30):
        self.auth = auth
        self.remote_root = "/" + remote_root.strip("/") if remote_root.strip("/") else ""
        self.timeout = timeout

    def _full_path(self, rel_path: str) -> str:
        rel = rel_path.strip("/")
        if not rel:
            return self.remote_root
        return f"{self.remote_root}/{rel}"

    def _rel_path(self, full_path: str) -> str:
        # the listed root itself comes back as an entry; it has no relative path
        if self.remote_root and full_path.rstrip("/").lower() == self.remote_root.lower():
            return ""
        if self.remote_root and full_path.lower().startswith(self.remote_root.lower() + "/"):
            full_path = full_path[len(self.remote_root) :]
        return full_path.strip("/")

    def _request(
        self,
        endpoint: str,
        *,
        body: Any = None,
        arg: dict[str, Any] | None = None,
        data: bytes | None = None,
    ) -> requests.Response:
        """POST to an RPC endpoint (``body``) or a content endpoint (``arg``).

        A 401 forces one token refresh and a retry. HTTP 409 responses are
        returned to the caller, which decides what the endpoint error means.
        """
        content = arg is not None
        url = f"{CONTENT_BASE if content else API_BASE}/{endpoint}"

        for attempt in range(2):
            if attempt == 0:
                token = self.auth.ensure_access_token()
            else:
                token = self.auth.refresh(force=True)["access_token"]

            headers = {"Authorization": f"Bearer {token}"}
            if content:
                headers["Dropbox-API-Arg"] = json.dumps(arg, ensure_ascii=True)
                payload = data
                if data is not None:
                    headers["Content-Type"] = "application/octet-stream"
            else:
                headers["Content-Type"] = "application/json"
                payload = json.dumps(body).encode("utf-8")

            try:
                res = requests.post(url, headers=headers, data=payload, timeout=self.timeout)
            except requests.RequestException as e:
                raise NetworkError(f"request_failed: {endpoint}: {e}") from e

            if res.status_code == 401:
                if attempt == 0:
                    logger.info("access_token_rejected endpoint=%s retry_after_refresh", endpoint)
                    continue
                raise AuthError("unauthorized_after_refresh")
            if res.status_code == 429 or res.status_code >= 500:
                raise NetworkError(f"remote_unavailable_status_{res.status_code}: {endpoint}")
            if res.status_code >= 400 and res.status_code != 409:
                raise SyncError(f"request_rejected_status_{res.status_code}: {endpoint}: {_error_summary(res)}")
            return res

        raise AuthError("unauthorized_after_refresh")

    def account_info(self) -> dict[str, Any]:
        res = self._request("users/get_current_account", body=None)
        if res.status_code == 409:
            raise SyncError(f"account_lookup_failed: {_error_summary(res)}")
        payload = res.json()
        return payload if isinstance(payload, dict) else {}

    def list_tree(self) -> tuple[list[dict[str, Any]], list[str]]:
        """Recursively list the remote root.

        Returns ``(files, folders)``; files are dicts with ``path``, ``name``,
        ``server_modified`` (ms), ``content_hash`` and ``size``. A missing
        remote root is an empty tree.
        """
        res = self._request(
            "files/list_folder",
            body={"path": self.remote_root, "recursive": True, "include_deleted": False},
        )
        if res.status_code == 409:
            summary = _error_summary(res)
            if summary.startswith("path/not_found"):
                return [], []
            raise SyncError(f"list_folder_failed: {summary}")

        files: list[dict[str, Any]] = []
        folders: list[str] = []
        while True:
            page = res.json()
            for entry in page.get("entries", []) or []:
                if not isinstance(entry, dict):
                    continue
                rel = self._rel_path(entry.get("path_display") or entry.get("path_lower") or "")
                if not rel:
                    continue
                tag = entry.get(".tag")
                if tag == "folder":
                    folders.append(rel)
                elif tag == "file":
                    files.append(
                        {
                            "path": rel,
                            "name": entry.get("name", rel.rsplit("/", 1)[-1]),
                            "server_modified": parse_timestamp(entry.get("server_modified")),
                            "content_hash": entry.get("content_hash", ""),
                            "size": int(entry.get("size", 0) or 0),
                        }
                    )
            if not page.get("has_more"):
                break
            res = self._request("files/list_folder/continue", body={"cursor": page.get("cursor")})
            if res.status_code == 409:
                raise SyncError(f"list_folder_continue_failed: {_error_summary(res)}")

        folders.sort(key=lambda p: (p.count("/"), p.lower()))
        return files, folders

    def download(self, rel_path: str) -> str:
        res = self._request("files/download", arg={"path": self._full_path(rel_path)})
        if res.status_code == 409:
            raise SyncError(f"download_failed: {rel_path}: {_error_summary(res)}")
        return res.content.decode("utf-8", errors="replace")

    def upload(self, rel_path: str, content: str) -> dict[str, Any]:
        res = self._request(
            "files/upload",
            arg={"path": self._full_path(rel_path), "mode": "overwrite", "autorename": False, "mute": True},
            data=content.encode("utf-8"),
        )
        if res.status_code == 409:
            raise SyncError(f"upload_failed: {rel_path}: {_error_summary(res)}")
        payload = res.json()
        return payload if isinstance(payload, dict) else {}

    def move(self, from_path: str, to_path: str) -> str:
        """Move ``from_path`` to ``to_path``, replacing whatever is at the target.

        Returns ``moved``, ``replaced`` (target existed and was deleted first)
        or ``missing`` (source is gone, the move already happened).
        """
        outcome = "moved"
        for _ in range(2):
            res = self._request(
                "files/move_v2",
                body={"from_path": self._full_path(from_path), "to_path": self._full_path(to_path), "autorename": False},
            )
            if res.status_code != 409:
                return outcome
            summary = _error_summary(res)
            if summary.startswith("from_lookup/not_found"):
                return "missing"
            if summary.startswith("to/conflict") and outcome == "moved":
                self.delete(to_path)
                outcome = "replaced"
                continue
            raise SyncError(f"move_failed: {from_path} -> {to_path}: {summary}")
        raise SyncError(f"move_failed: {from_path} -> {to_path}: target_conflict")

    def delete(self, rel_path: str) -> bool:
        """Delete a file or folder (recursively). False when nothing was there."""
        res = self._request("files/delete_v2", body={"path": self._full_path(rel_path)})
        if res.status_code != 409:
            return True
        summary = _error_summary(res)
        if summary.startswith("path_lookup/not_found"):
            return False
        raise SyncError(f"delete_failed: {rel_path}: {summary}")
