from __future__ import annotations

import copy
from collections.abc import Mapping


class InMemorySnapshotRepo:
    """Snapshot repository kept in process memory.

    Seeded from a file snapshot it gives read-only views whose writes never
    reach disk.
    """

    def __init__(self, initial: Mapping[str, object] | None = None) -> None:
        self._payload: dict[str, object] | None = (
            copy.deepcopy(dict(initial)) if initial is not None else None
        )
        self.save_count = 0
        self.fail_saves = False

    def load(self) -> dict[str, object] | None:
        if self._payload is None:
            return None
        return copy.deepcopy(self._payload)

    def save(self, payload: Mapping[str, object]) -> None:
        if self.fail_saves:
            raise OSError("in-memory snapshot save disabled")
        self._payload = copy.deepcopy(dict(payload))
        self.save_count += 1
