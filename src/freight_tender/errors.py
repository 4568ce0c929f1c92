"""
Error types shared by the pipeline and its collaborators
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


class TenderExtractError(Exception):
    """Base class; status_code mirrors the HTTP status a caller would map to"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "type": type(self).__name__}


class AuthError(TenderExtractError):
    def __init__(self, message: str = "Authentication required", status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class RateLimitExceededError(TenderExtractError):
    status_code = 429

    def __init__(self, retry_after: int, route: str):
        super().__init__(f"Rate limit exceeded for {route}, retry after {retry_after}s")
        self.retry_after = retry_after
        self.route = route

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class TenderLockError(TenderExtractError):
    status_code = 423

    def __init__(self, message: str, tender_id: str, locked_by: Optional[str] = None,
                 lock_reason: Optional[str] = None):
        super().__init__(message)
        self.tender_id = tender_id
        self.locked_by = locked_by
        self.lock_reason = lock_reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(tender_id=self.tender_id, locked_by=self.locked_by, lock_reason=self.lock_reason)
        return data


class InvalidStateTransitionError(TenderExtractError):
    status_code = 409

    def __init__(self, current_state: str, target_state: str):
        super().__init__(f"Invalid state transition from {current_state} to {target_state}")
        self.current_state = current_state
        self.target_state = target_state


class RetryError(TenderExtractError):
    status_code = 503

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class IdempotencyConflictError(TenderExtractError):
    status_code = 409

    def __init__(self, key: str, route: str):
        super().__init__(f"Idempotency key {key!r} was already used with a different request on {route}")
        self.key = key
        self.route = route


class RuleConflictError(TenderExtractError):
    """Customer profile changed since it was read"""
    status_code = 409

    def __init__(self, customer_id: str, expected_version: int, actual_version: int):
        super().__init__(f"Customer {customer_id} was modified (version {actual_version}, "
                         f"expected {expected_version})")
        self.customer_id = customer_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class ClassificationError(TenderExtractError):
    status_code = 502

    def __init__(self, message: str, usage=None, retryable: bool = False):
        super().__init__(message)
        self.usage = usage
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.usage is not None:
            data["usage"] = self.usage.model_dump()
        return data


class FileParseError(TenderExtractError):
    status_code = 400

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.filename = filename


class NotFoundError(TenderExtractError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class RequestValidationError(TenderExtractError):
    status_code = 400


@dataclass
class ExportValidationError:
    """One dry-run finding; severity 'error' blocks the export"""
    field: str
    message: str
    severity: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
