from taskloop.state.git_sync import FinalizeReport, GitSyncError, GitSynchronizer, SyncReport
from taskloop.state.store import StateStore, StateStoreError

__all__ = [
    "FinalizeReport",
    "GitSyncError",
    "GitSynchronizer",
    "StateStore",
    "StateStoreError",
    "SyncReport",
]
