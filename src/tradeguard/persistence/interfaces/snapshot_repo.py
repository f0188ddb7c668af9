from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol


class SnapshotRepoProtocol(Protocol):
    def load(self) -> dict[str, object] | None: ...

    def save(self, payload: Mapping[str, object]) -> None: ...
