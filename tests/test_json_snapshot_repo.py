from __future__ import annotations

import json

import pytest

from tradeguard.persistence.json_file import JsonFileSnapshotRepo


def test_missing_file_loads_as_none(tmp_path) -> None:
    assert JsonFileSnapshotRepo(tmp_path / "state.json").load() is None


def test_save_creates_parent_and_writes_json(tmp_path) -> None:
    repo = JsonFileSnapshotRepo(tmp_path / "nested" / "state.json")

    repo.save({"version": 1, "value": "0.5"})

    assert json.loads(repo.path.read_text(encoding="utf-8")) == {"version": 1, "value": "0.5"}
    assert list(repo.path.parent.glob("*.tmp")) == []


def test_backups_rotate_with_newest_first(tmp_path) -> None:
    repo = JsonFileSnapshotRepo(tmp_path / "state.json", max_backups=2)

    for generation in range(4):
        repo.save({"generation": generation})

    assert repo.load() == {"generation": 3}
    assert json.loads(repo.backup_path(1).read_text()) == {"generation": 2}
    assert json.loads(repo.backup_path(2).read_text()) == {"generation": 1}
    assert not repo.backup_path(3).exists()
    assert repo.backup_path(1).name == "state.backup.1.json"


def test_corrupt_main_file_falls_back_to_backup(tmp_path, caplog) -> None:
    repo = JsonFileSnapshotRepo(tmp_path / "state.json", max_backups=2)
    repo.save({"generation": 1})
    repo.save({"generation": 2})
    repo.path.write_text("{not json", encoding="utf-8")

    assert repo.load() == {"generation": 1}
    messages = [record.getMessage() for record in caplog.records]
    assert "snapshot_corrupt" in messages
    assert "snapshot_loaded_from_backup" in messages


def test_non_object_document_is_ignored(tmp_path) -> None:
    repo = JsonFileSnapshotRepo(tmp_path / "state.json", max_backups=0)
    repo.path.write_text("[1, 2, 3]", encoding="utf-8")

    assert repo.load() is None


def test_zero_backups_keeps_single_file(tmp_path) -> None:
    repo = JsonFileSnapshotRepo(tmp_path / "breaker.json", max_backups=0)
    repo.save({"a": 1})
    repo.save({"a": 2})

    assert sorted(path.name for path in tmp_path.iterdir()) == ["breaker.json"]


def test_negative_backup_count_is_rejected(tmp_path) -> None:
    with pytest.raises(ValueError, match="max_backups"):
        JsonFileSnapshotRepo(tmp_path / "state.json", max_backups=-1)


def test_undecodable_main_file_loads_as_none(tmp_path, caplog) -> None:
    repo = JsonFileSnapshotRepo(tmp_path / "state.json", max_backups=0)
    repo.path.write_bytes(b"\xff\xfe\x00garbage")

    assert repo.load() is None
    assert "snapshot_corrupt" in [record.getMessage() for record in caplog.records]


def test_undecodable_main_file_falls_back_to_backup(tmp_path) -> None:
    repo = JsonFileSnapshotRepo(tmp_path / "state.json", max_backups=2)
    repo.save({"generation": 1})
    repo.save({"generation": 2})
    repo.path.write_bytes(b"\xff\xfe\x00garbage")

    assert repo.load() == {"generation": 1}
