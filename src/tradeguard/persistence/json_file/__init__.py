from tradeguard.persistence.json_file.snapshot_repo import JsonFileSnapshotRepo

__all__ = ["JsonFileSnapshotRepo"]
