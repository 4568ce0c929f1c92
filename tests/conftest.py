"""Shared fixtures for the freight tender test suite."""

import copy

import pytest

from freight_tender.auth import AuthContext
from freight_tender.schema import CustomerProfile, CustomerRule, LLMUsage, ProcessingConfig
from freight_tender.store import InMemoryStore, ObjectStorage
from freight_tender.pipeline import TenderPipeline


class FakeRouter:
    """Stands in for LLMRouter: replays canned JSON objects or raises canned errors."""

    provider = "fake"
    model = "fake-model"

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    @property
    def available(self):
        return True

    def complete_json(self, system, user, schema, schema_name="response"):
        index = min(len(self.calls), len(self.responses) - 1)
        self.calls.append(user)
        item = self.responses[index]
        if isinstance(item, BaseException):
            raise item
        usage = LLMUsage(model=self.model, provider=self.provider, prompt_tokens=120,
                         completion_tokens=40, total_tokens=160, duration_ms=5)
        return copy.deepcopy(item), usage


class FakeClock:
    """Manually advanced clock for time-window tests."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_rule(rule_id="rule-1", customer_id="cust-1", rule_type="label_map", pattern="Release #",
              target_value="po", status="active", **kwargs):
    return CustomerRule(id=rule_id, customer_id=customer_id, rule_type=rule_type, pattern=pattern,
                        target_value=target_value, status=status, **kwargs)


@pytest.fixture
def profile():
    """A customer profile with no rules."""
    return CustomerProfile(id="cust-1", name="Acme Foods", code="ACME")


@pytest.fixture
def release_profile():
    """A customer whose 'Release #' label means PO."""
    return CustomerProfile(id="cust-1", name="Acme Foods", code="ACME",
                           rules=[make_rule()])


@pytest.fixture
def user():
    return AuthContext(user_id="user-1", email="dispatch@example.com")


@pytest.fixture
def admin():
    return AuthContext(user_id="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def shipment_data():
    """Model output for the Chicago PO tender."""
    return {
        "reference_numbers": [{"type": "po", "value": "118585", "applies_to": None}],
        "stops": [
            {
                "type": "delivery",
                "sequence": 1,
                "location": {"name": None, "address": None, "city": "Chicago", "state": "IL",
                             "zip": "60601", "country": None},
                "schedule": {"date": None, "time": None, "appointment_required": None},
                "reference_numbers": [],
                "notes": None,
            }
        ],
        "cargo": {
            "weight": {"value": None, "unit": None},
            "pieces": {"count": None, "type": None},
            "dimensions": None,
            "commodity": None,
            "temperature": None,
        },
        "unclassified_notes": [],
    }


@pytest.fixture
def make_pipeline(store, clock):
    """Factory for a pipeline over the shared store with a fake model."""

    def factory(responses=None, **config):
        router = FakeRouter(responses) if responses is not None else None
        pipeline = TenderPipeline(
            store,
            ProcessingConfig(llm_provider="none", **config),
            router=router,
            storage=ObjectStorage("test-secret", clock=clock),
            sleep=lambda seconds: None,
        )
        pipeline.fake_router = router
        return pipeline

    return factory
