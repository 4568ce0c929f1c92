"""
Per-tender processing locks with expiry
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import TenderLockError
from .store import InMemoryStore, LockInfo

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 300


class TenderLockManager:
    """Locks live in the store; an expired lock counts as free"""

    def __init__(self, store: InMemoryStore, timeout: float = LOCK_TIMEOUT_SECONDS):
        self.store = store
        self.timeout = timeout

    def is_locked(self, tender_id: str) -> Optional[LockInfo]:
        """The active lock, or None"""
        with self.store.transaction() as store:
            info = store.locks.get(tender_id)
            if info is None:
                return None
            if store.clock() - info.locked_at >= self.timeout:
                del store.locks[tender_id]
                logger.info(f"Lock on tender {tender_id} expired")
                return None
            return info

    def acquire_lock(self, tender_id: str, user_id: str, reason: str) -> LockInfo:
        with self.store.transaction() as store:
            current = self.is_locked(tender_id)
            if current is not None:
                raise TenderLockError("Tender is currently being processed", tender_id,
                                      current.locked_by, current.lock_reason)
            info = LockInfo(locked_by=user_id, lock_reason=reason, locked_at=store.clock())
            store.locks[tender_id] = info
            logger.debug(f"Lock acquired on {tender_id} by {user_id} ({reason})")
            return info

    def release_lock(self, tender_id: str, user_id: str) -> bool:
        """Only the owner may release"""
        with self.store.transaction() as store:
            info = store.locks.get(tender_id)
            if info is None or info.locked_by != user_id:
                return False
            del store.locks[tender_id]
            return True

    def force_release_lock(self, tender_id: str) -> None:
        with self.store.transaction() as store:
            if store.locks.pop(tender_id, None) is not None:
                logger.warning(f"Lock on tender {tender_id} force released")

    @contextmanager
    def tender_lock(self, tender_id: str, user_id: str, reason: str) -> Iterator[LockInfo]:
        info = self.acquire_lock(tender_id, user_id, reason)
        try:
            yield info
        finally:
            self.release_lock(tender_id, user_id)
