import base64
import hashlib
import json
import logging
import secrets
import threading
import time
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import requests

from notesync.exceptions import AuthError, NetworkError

AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"

# tokens are treated as stale this long before they actually expire
EXPIRY_MARGIN_SEC = 300

logger = logging.getLogger("auth")


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_code_verifier() -> str:
    return secrets.token_urlsafe(64)[:128]


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def token_expire_at(tokens: dict[str, Any]) -> int:
    created = int(tokens.get("created_at", 0) or 0)
    expires_in = int(tokens.get("expires_in", 14400) or 14400)
    return created + max(expires_in - EXPIRY_MARGIN_SEC, 0) * 1000


class DropboxAuth:
    """OAuth2 authorization-code-with-PKCE plus refresh-token handling.

    Tokens live in a JSON file (``access_token``, ``refresh_token``,
    ``expires_in``, ``created_at`` in ms). The pending PKCE verifier and
    ``state`` live in a separate runtime file between ``begin_auth`` and
    ``complete_auth``.
    """

    def __init__(self, app_key: str, token_file: str, state_file: str, redirect_uri: str = "", timeout: int = 30):
        self.app_key = app_key or ""
        self.token_file = token_file or ""
        self.state_file = state_file or ""
        self.redirect_uri = redirect_uri or ""
        self.timeout = timeout
        self._lock = threading.Lock()

    # -- files ------------------------------------------------------------

    @staticmethod
    def _read_json(path_text: str) -> dict[str, Any] | None:
        if not path_text:
            return None
        p = Path(path_text)
        if not p.exists():
            return None
        try:
            payload = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("auth_file_unreadable path=%s", p)
            return None
        if isinstance(payload, dict):
            return payload
        return None

    @staticmethod
    def _write_json(path_text: str, data: dict[str, Any]) -> None:
        if not path_text:
            return
        p = Path(path_text)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def _load_tokens(self) -> dict[str, Any] | None:
        return self._read_json(self.token_file)

    def _save_tokens(self, data: dict[str, Any]) -> None:
        self._write_json(self.token_file, data)

    def _load_pending(self) -> dict[str, Any] | None:
        return self._read_json(self.state_file)

    # -- authorization ----------------------------------------------------

    def begin_auth(self) -> str:
        """Start a PKCE flow and return the URL the user has to open."""
        if not self.app_key:
            raise AuthError("app_key_missing")
        if not self.redirect_uri:
            raise AuthError("redirect_uri_missing")

        verifier = make_code_verifier()
        state = secrets.token_urlsafe(16)
        self._write_json(
            self.state_file,
            {"state": state, "code_verifier": verifier, "created_at": _now_ms(), "used_code": None},
        )
        query = urlencode(
            {
                "client_id": self.app_key,
                "response_type": "code",
                "code_challenge": code_challenge_s256(verifier),
                "code_challenge_method": "S256",
                "token_access_type": "offline",
                "redirect_uri": self.redirect_uri,
                "state": state,
            }
        )
        logger.info("auth_started state=%s", state[:6])
        return f"{AUTHORIZE_URL}?{query}"

    def complete_auth(self, code: str, state: str | None = None) -> dict[str, Any]:
        """Exchange ``code`` for tokens, at most once per code."""
        code_text = (code or "").strip()
        if not code_text:
            raise AuthError("oauth_code_missing")

        with self._lock:
            pending = self._load_pending()
            if pending and pending.get("used_code") == code_text:
                tokens = self._load_tokens()
                if tokens:
                    logger.info("auth_code_reused returning stored tokens")
                    return tokens
            if not pending or not pending.get("code_verifier"):
                raise AuthError("oauth_not_started")
            if state is not None and state != pending.get("state"):
                raise AuthError("oauth_state_mismatch")

            payload = self._post_token(
                {
                    "grant_type": "authorization_code",
                    "code": code_text,
                    "code_verifier": pending["code_verifier"],
                    "client_id": self.app_key,
                    "redirect_uri": self.redirect_uri,
                },
                error_code="code_exchange_failed",
            )
            if not payload.get("access_token"):
                raise AuthError("code_exchange_failed_no_access_token")

            payload["created_at"] = _now_ms()
            self._save_tokens(payload)
            pending["used_code"] = code_text
            self._write_json(self.state_file, pending)
            logger.info("auth_completed account=%s", payload.get("account_id", "-"))
            return payload

    def _post_token(self, data: dict[str, str], *, error_code: str) -> dict[str, Any]:
        try:
            res = requests.post(TOKEN_URL, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"token_endpoint_unreachable: {e}") from e

        if res.status_code == 429 or res.status_code >= 500:
            raise NetworkError(f"token_endpoint_status_{res.status_code}")
        try:
            body_raw = res.json()
        except ValueError:
            body_raw = {}
        body = body_raw if isinstance(body_raw, dict) else {}
        if res.status_code >= 400:
            reason = body.get("error_description") or body.get("error") or res.status_code
            raise AuthError(f"{error_code}: {reason}")
        return body

    # -- tokens -----------------------------------------------------------

    def refresh(self, force: bool = False) -> dict[str, Any]:
        tokens = self._load_tokens()
        if not tokens:
            raise AuthError("no_token")

        if not force and tokens.get("access_token") and _now_ms() < token_expire_at(tokens):
            return tokens

        refresh_token = (tokens.get("refresh_token") or "").strip()
        if not refresh_token:
            raise AuthError("token_expired_no_refresh_token")
        if not self.app_key:
            raise AuthError("app_key_missing")

        payload = self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token, "client_id": self.app_key},
            error_code="refresh_token_failed",
        )
        if not payload.get("access_token"):
            raise AuthError("refresh_token_failed_no_access_token")

        # the refresh grant does not return a new refresh token
        refreshed = {**tokens, **payload, "created_at": _now_ms()}
        self._save_tokens(refreshed)
        logger.info("token_refreshed forced=%s", force)
        return refreshed

    def ensure_access_token(self) -> str:
        return str(self.refresh(force=False)["access_token"])

    def is_connected(self) -> bool:
        tokens = self._load_tokens() or {}
        return bool(tokens.get("refresh_token") or tokens.get("access_token"))

    def disconnect(self) -> None:
        for path_text in (self.token_file, self.state_file):
            if path_text:
                Path(path_text).unlink(missing_ok=True)
        logger.info("auth_disconnected")

    def status(self) -> dict[str, Any]:
        tokens = self._load_tokens() or {}
        expire_at = token_expire_at(tokens) if tokens else 0
        return {
            "connected": bool(tokens.get("refresh_token") or tokens.get("access_token")),
            "has_refresh_token": bool(tokens.get("refresh_token")),
            "access_token_fresh": bool(tokens.get("access_token")) and _now_ms() < expire_at,
            "expire_at": expire_at or None,
            "account_id": tokens.get("account_id"),
        }
