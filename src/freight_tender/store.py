"""
In-process persistence: transactional record store and signed-URL object storage
"""
import hmac
import time
import uuid
import hashlib
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

from .errors import NotFoundError, RuleConflictError
from .schema import (
    Batch, CustomerProfile, ExtractionRun, FinalFields, LearningEvent, Tender, UsageLog, utc_now,
)

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class LockInfo:
    locked_by: str
    lock_reason: str
    locked_at: float


@dataclass
class IdempotencyRecord:
    key: str
    route: str
    request_hash: str
    user_id: Optional[str] = None
    status: str = "pending"  # pending / completed / failed
    response: Any = None
    created_at: str = field(default_factory=utc_now)


class InMemoryStore:
    """All tables live in dicts guarded by one re-entrant lock"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = threading.RLock()
        self.tenders: Dict[str, Tender] = {}
        self.runs: Dict[str, List[ExtractionRun]] = {}
        self.final_fields: Dict[str, FinalFields] = {}
        self.customers: Dict[str, CustomerProfile] = {}
        self.learning_events: List[LearningEvent] = []
        self.batches: Dict[str, Batch] = {}
        self.idempotency_records: Dict[Tuple[str, Optional[str], str], IdempotencyRecord] = {}
        self.rate_limit_hits: Dict[Tuple[str, str, Optional[str]], List[float]] = {}
        self.locks: Dict[str, LockInfo] = {}
        self.usage_logs: List[UsageLog] = []

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        """Hold the store lock for a multi-step read-modify-write"""
        with self._lock:
            yield self

    # ------------------------------------------------------------ tenders

    def save_tender(self, tender: Tender) -> Tender:
        with self._lock:
            self.tenders[tender.id] = tender
            return tender

    def get_tender(self, tender_id: str) -> Tender:
        with self._lock:
            tender = self.tenders.get(tender_id)
            if tender is None:
                raise NotFoundError("Tender", tender_id)
            return tender

    def find_duplicate(self, customer_id: Optional[str], file_hash: str,
                       window_days: int) -> Optional[Tender]:
        """Most recent tender with the same content hash and customer inside the window"""
        cutoff = datetime.now(timezone.utc) - timedelta(days=window_days)
        with self._lock:
            matches = [
                t for t in self.tenders.values()
                if t.file_hash == file_hash and t.customer_id == customer_id
                and datetime.fromisoformat(t.created_at) >= cutoff
            ]
        if not matches:
            return None
        return max(matches, key=lambda t: t.created_at)

    # ------------------------------------------------------------ extraction runs

    def add_run(self, run: ExtractionRun) -> ExtractionRun:
        with self._lock:
            self.runs.setdefault(run.tender_id, []).append(run)
            return run

    def get_runs(self, tender_id: str) -> List[ExtractionRun]:
        with self._lock:
            return list(self.runs.get(tender_id, []))

    def latest_run(self, tender_id: str) -> Optional[ExtractionRun]:
        runs = self.get_runs(tender_id)
        return runs[-1] if runs else None

    # ------------------------------------------------------------ final fields

    def upsert_final_fields(self, tender_id: str, shipment, reviewed_by: Optional[str]) -> FinalFields:
        with self._lock:
            existing = self.final_fields.get(tender_id)
            if existing is not None:
                existing.shipment = shipment
                existing.reviewed_by = reviewed_by
                existing.updated_at = utc_now()
                return existing
            record = FinalFields(id=new_id(), tender_id=tender_id, shipment=shipment,
                                 reviewed_by=reviewed_by)
            self.final_fields[tender_id] = record
            return record

    def get_final_fields(self, tender_id: str) -> Optional[FinalFields]:
        with self._lock:
            return self.final_fields.get(tender_id)

    # ------------------------------------------------------------ customers

    def get_customer(self, customer_id: str) -> CustomerProfile:
        """A detached copy; write it back with save_customer"""
        with self._lock:
            profile = self.customers.get(customer_id)
            if profile is None:
                raise NotFoundError("Customer", customer_id)
            return profile.model_copy(deep=True)

    def save_customer(self, profile: CustomerProfile) -> CustomerProfile:
        """Write a profile read at profile.version; bumps the version"""
        with self._lock:
            current = self.customers.get(profile.id)
            if current is not None and current.version != profile.version:
                raise RuleConflictError(profile.id, profile.version, current.version)
            stored = profile.model_copy(deep=True)
            stored.version = profile.version + 1
            stored.updated_at = utc_now()
            self.customers[profile.id] = stored
            profile.version = stored.version
            return stored.model_copy(deep=True)

    # ------------------------------------------------------------ learning / batches / usage

    def add_learning_events(self, events: List[LearningEvent]) -> None:
        with self._lock:
            self.learning_events.extend(events)

    def save_batch(self, batch: Batch) -> Batch:
        with self._lock:
            self.batches[batch.id] = batch
            return batch

    def get_batch(self, batch_id: str) -> Batch:
        with self._lock:
            batch = self.batches.get(batch_id)
            if batch is None:
                raise NotFoundError("Batch", batch_id)
            return batch

    def add_usage_log(self, log: UsageLog) -> None:
        with self._lock:
            self.usage_logs.append(log)


class ObjectStorage:
    """Byte blobs with expiring HMAC-signed URLs"""

    def __init__(self, secret: str, base_url: str = "memory://tender-files",
                 clock: Callable[[], float] = time.time):
        self.secret = secret.encode("utf-8")
        self.base_url = base_url.rstrip("/")
        self.clock = clock
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def upload(self, path: str, data: bytes) -> str:
        with self._lock:
            self._objects[path] = data
        logger.info(f"Stored {len(data)} bytes at {path}")
        return path

    def download(self, path: str) -> bytes:
        with self._lock:
            if path not in self._objects:
                raise NotFoundError("File", path)
            return self._objects[path]

    def _signature(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    def create_signed_url(self, path: str, ttl: int) -> str:
        with self._lock:
            if path not in self._objects:
                raise NotFoundError("File", path)
        expires = int(self.clock()) + ttl
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self.base_url}/{path}?{query}"

    def verify_signed_url(self, url: str) -> bool:
        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        try:
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, ValueError, IndexError):
            return False
        path = url[len(self.base_url) + 1:].split("?", 1)[0]
        if expires < self.clock():
            return False
        return hmac.compare_digest(signature, self._signature(path, expires))
