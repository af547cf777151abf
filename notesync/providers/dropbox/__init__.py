from .auth import DropboxAuth
from .client import DropboxClient, content_hash, parse_timestamp
from .sync_engine import SyncEngine, SyncResult

__all__ = ["DropboxAuth", "DropboxClient", "SyncEngine", "SyncResult", "content_hash", "parse_timestamp"]
