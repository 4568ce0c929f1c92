"""
Idempotency keys for safely retried requests
"""
import json
import hashlib
import logging
from typing import Any, Callable, Optional, Tuple, TypeVar

from .errors import IdempotencyConflictError
from .store import IdempotencyRecord, InMemoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def hash_request_payload(payload: Any) -> str:
    """sha256 of the key-sorted JSON payload, first 32 hex chars"""
    normalized = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]


def with_idempotency(store: InMemoryStore, key: Optional[str], user_id: Optional[str], route: str,
                     payload: Any, handler: Callable[[], T]) -> Tuple[T, bool]:
    """(response, from_cache); replays a completed response for the same key, caller, route and payload"""
    if not key:
        return handler(), False

    request_hash = hash_request_payload(payload)
    with store.transaction():
        record = store.idempotency_records.get((key, user_id, route))
        if record is not None:
            if record.request_hash != request_hash:
                raise IdempotencyConflictError(key, route)
            if record.status == "completed":
                logger.info(f"Replaying cached response for idempotency key {key}")
                return record.response, True
            # pending or failed: run again
        else:
            record = IdempotencyRecord(key=key, route=route, request_hash=request_hash, user_id=user_id)
            store.idempotency_records[(key, user_id, route)] = record

    try:
        response = handler()
    except Exception as e:
        with store.transaction():
            record.status = "failed"
            record.response = {"error": str(e)}
        raise

    with store.transaction():
        record.status = "completed"
        record.response = response
    return response, False
