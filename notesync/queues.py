from __future__ import annotations

from typing import Iterable, Iterator

from notesync.models import RenameOperation


class RenameQueue:
    """Pending remote moves, coalesced so each source keeps a single entry.

    Renaming ``a -> b`` and then ``b -> c`` leaves one ``a -> c`` entry. The
    reverse index from destination to entry position avoids scanning the list
    on every rename.
    """

    def __init__(self, operations: Iterable[RenameOperation | dict] | None = None):
        self._ops: list[RenameOperation] = []
        self._index_by_target: dict[str, int] = {}
        for op in operations or []:
            if isinstance(op, dict):
                op = RenameOperation.model_validate(op)
            self._append(op.source, op.target)

    def _append(self, source: str, target: str) -> None:
        self._ops.append(RenameOperation(source=source, target=target))
        self._index_by_target[target] = len(self._ops) - 1

    def _reindex(self) -> None:
        self._index_by_target = {op.target: i for i, op in enumerate(self._ops)}

    def queue_rename(self, source: str, target: str) -> None:
        if source == target:
            return

        idx = self._index_by_target.pop(source, None)
        if idx is None:
            self._append(source, target)
            return

        existing = self._ops[idx]
        if existing.source == target:
            # renamed back to where it started
            del self._ops[idx]
            self._reindex()
            return

        self._ops[idx] = RenameOperation(source=existing.source, target=target)
        self._index_by_target[target] = idx

    def operations(self) -> list[RenameOperation]:
        return [op.model_copy() for op in self._ops]

    def to_records(self) -> list[dict[str, str]]:
        return [op.to_record() for op in self._ops]

    def clear(self) -> None:
        self._ops.clear()
        self._index_by_target.clear()

    def __iter__(self) -> Iterator[RenameOperation]:
        return iter(self.operations())

    def __len__(self) -> int:
        return len(self._ops)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RenameQueue):
            return self.to_records() == other.to_records()
        if isinstance(other, list):
            return self.to_records() == [
                op.to_record() if isinstance(op, RenameOperation) else op for op in other
            ]
        return NotImplemented


class DeletionQueue:
    """Append-only list of remote paths awaiting permanent removal."""

    def __init__(self, paths: Iterable[str] | None = None):
        self._paths: list[str] = list(paths or [])

    def append(self, path: str) -> None:
        if path:
            self._paths.append(path)

    def extend(self, paths: Iterable[str]) -> None:
        for path in paths:
            self.append(path)

    def paths(self) -> list[str]:
        return list(self._paths)

    def drop_first(self, count: int) -> None:
        del self._paths[:count]

    def clear(self) -> None:
        self._paths.clear()

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._paths))

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, path: object) -> bool:
        return path in self._paths
