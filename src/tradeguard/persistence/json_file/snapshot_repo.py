from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)


class JsonFileSnapshotRepo:
    """Stores one JSON document on disk with atomic replace and rotated backups.

    Backups are named ``<stem>.backup.N<suffix>`` where ``N=1`` is the most
    recent one. ``load`` falls back to the newest readable backup when the main
    file is missing or corrupt.
    """

    def __init__(self, path: str | Path, *, max_backups: int = 5) -> None:
        if max_backups < 0:
            raise ValueError("max_backups must be >= 0")
        self.path = Path(path).expanduser()
        self.max_backups = max_backups

    def backup_path(self, index: int) -> Path:
        suffix = self.path.suffix or ".json"
        return self.path.with_name(f"{self.path.stem}.backup.{index}{suffix}")

    def load(self) -> dict[str, object] | None:
        candidates = [self.path, *(self.backup_path(i) for i in range(1, self.max_backups + 1))]
        for candidate in candidates:
            payload = self._read(candidate)
            if payload is None:
                continue
            if candidate != self.path:
                logger.warning(
                    "snapshot_loaded_from_backup",
                    extra={"extra": {"path": str(self.path), "backup": str(candidate)}},
                )
            return payload
        return None

    def save(self, payload: Mapping[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.max_backups > 0 and self.path.exists():
            self._rotate_backups()
        text = json.dumps(dict(payload), indent=2, sort_keys=True, default=str)
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def _rotate_backups(self) -> None:
        oldest = self.backup_path(self.max_backups)
        if oldest.exists():
            oldest.unlink()
        for index in range(self.max_backups - 1, 0, -1):
            current = self.backup_path(index)
            if current.exists():
                os.replace(current, self.backup_path(index + 1))
        shutil.copy2(self.path, self.backup_path(1))

    def _read(self, path: Path) -> dict[str, object] | None:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning(
                "snapshot_read_failed",
                extra={"extra": {"path": str(path), "error_type": type(exc).__name__}},
            )
            return None
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning(
                "snapshot_corrupt",
                extra={"extra": {"path": str(path), "error": str(exc)}},
            )
            return None
        if not isinstance(payload, dict):
            logger.warning("snapshot_not_an_object", extra={"extra": {"path": str(path)}})
            return None
        return payload
