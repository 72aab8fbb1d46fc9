"""
Staging Sync Exceptions
=======================

Custom exception types for the staging reconciliation service.

WHY THIS FILE EXISTS
--------------------
The reconciliation has two failure modes that callers handle differently:
- A run is refused because another one already owns the user's session
- A run dies on a systemic error (database unreachable, a provider pass raised)

Per-row problems are NOT exceptions at this level; the provider reconciler
counts them and leaves the row for the next run.

RELATED FILES
-------------
- codsync/services/sync_progress_store.py: Raises SyncAlreadyRunningError
- codsync/services/staging_sync_service.py: Raises StagingSyncFailed
- codsync/routers/staging_sync.py: Maps SyncAlreadyRunningError to HTTP 409
"""

from typing import Optional


class StagingSyncError(Exception):
    """
    Base exception for staging sync errors.

    USAGE:
        try:
            await run_staging_sync(user_id)
        except StagingSyncError as e:
            logger.warning("sync for %s failed: %s", e.user_id, e)
    """

    def __init__(self, message: str, user_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_id = user_id


class SyncAlreadyRunningError(StagingSyncError):
    """
    Another run currently owns the user's sync session.

    RECOVERY:
        Nothing to do; the caller polls progress of the running session.
    """

    def __init__(self, user_id: str, run_id: Optional[str] = None):
        self.run_id = run_id
        super().__init__(f"Staging sync already running for user {user_id}", user_id)


class StagingSyncFailed(StagingSyncError):
    """Systemic failure; the session has been marked phase=error, is_running=false."""

    def __init__(self, message: str, user_id: Optional[str] = None, run_id: Optional[str] = None):
        self.run_id = run_id
        super().__init__(message, user_id)
