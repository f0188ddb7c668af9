from tradeguard.persistence.interfaces.snapshot_repo import SnapshotRepoProtocol

__all__ = ["SnapshotRepoProtocol"]
