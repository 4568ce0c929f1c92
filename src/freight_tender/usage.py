"""
Model usage logging and per-customer failure reporting
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .schema import LLMUsage, UsageLog
from .store import InMemoryStore, new_id

logger = logging.getLogger(__name__)


@dataclass
class CustomerUsage:
    customer_id: str
    total_calls: int = 0
    failed_calls: int = 0
    total_tokens: int = 0
    total_warnings: int = 0
    reprocess_count: int = 0

    @property
    def failure_rate(self) -> float:
        return self.failed_calls / self.total_calls if self.total_calls else 0.0

    @property
    def avg_warnings(self) -> float:
        return round(self.total_warnings / self.total_calls, 2) if self.total_calls else 0.0


@dataclass
class UsageSummary:
    total_calls: int = 0
    failed_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    avg_duration_ms: float = 0.0
    by_model: Dict[str, int] = field(default_factory=dict)
    by_customer: Dict[str, CustomerUsage] = field(default_factory=dict)


def log_usage(store: InMemoryStore, usage: LLMUsage, tender_id: Optional[str] = None,
              customer_id: Optional[str] = None, operation: str = "classify",
              warnings_count: int = 0) -> UsageLog:
    """Record one classification attempt, successful or not"""
    entry = UsageLog(id=new_id(), tender_id=tender_id, customer_id=customer_id,
                     operation=operation, warnings_count=warnings_count, usage=usage)
    store.add_usage_log(entry)
    status = "✅" if usage.success else "❌"
    logger.info(f"{status} LLM {operation} for tender {tender_id}: {usage.total_tokens} tokens, "
                f"{usage.duration_ms}ms")
    return entry


def summarize_usage(logs: List[UsageLog]) -> UsageSummary:
    summary = UsageSummary()
    total_duration = 0
    for log in logs:
        usage = log.usage
        summary.total_calls += 1
        summary.prompt_tokens += usage.prompt_tokens
        summary.completion_tokens += usage.completion_tokens
        summary.total_tokens += usage.total_tokens
        total_duration += usage.duration_ms
        summary.by_model[usage.model] = summary.by_model.get(usage.model, 0) + 1
        if not usage.success:
            summary.failed_calls += 1

        if log.customer_id:
            stats = summary.by_customer.setdefault(log.customer_id, CustomerUsage(log.customer_id))
            stats.total_calls += 1
            stats.total_tokens += usage.total_tokens
            stats.total_warnings += log.warnings_count
            if not usage.success:
                stats.failed_calls += 1
            if log.operation == "reprocess":
                stats.reprocess_count += 1

    if summary.total_calls:
        summary.avg_duration_ms = total_duration / summary.total_calls
    return summary


def failing_customers(logs: List[UsageLog], threshold: float = 0.2, limit: int = 20) -> List[CustomerUsage]:
    """Customers whose failure rate exceeds the threshold, worst first"""
    stats = summarize_usage(logs).by_customer.values()
    failing = [s for s in stats if s.failure_rate > threshold]
    failing.sort(key=lambda s: (s.failure_rate, s.avg_warnings), reverse=True)
    return failing[:limit]
