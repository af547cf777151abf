from __future__ import annotations

import secrets
import time

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_id() -> str:
    return secrets.token_hex(6)


class Folder(BaseModel):
    id: str = Field(default_factory=generate_id)
    name: str
    parent_id: str | None = None
    created_at: int = Field(default_factory=now_ms)
    deleted_at: int | None = None


class Note(BaseModel):
    id: str = Field(default_factory=generate_id)
    folder_id: str | None = None
    title: str = ""
    content: str = ""
    is_bookmarked: bool = False
    bookmark_order: int | None = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    deleted_at: int | None = None


class RenameOperation(BaseModel):
    # `from` is a keyword, so the attribute is `source` and the record key is "from".
    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")

    def to_record(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)
