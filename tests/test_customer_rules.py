"""Tests for customer rule lifecycle and lookups."""

import pytest

from freight_tender.customer_rules import (
    apply_rule_action,
    apply_suggested_rule,
    approve_rule,
    create_proposed_rule,
    create_proposed_rules_from_events,
    delete_rule,
    deprecate_rule,
    get_active_label_map_rules,
    get_active_rules,
    get_rules_grouped,
    reactivate_rule,
    temperature_category,
)
from freight_tender.schema import (
    CustomerProfile,
    LearningEvent,
    LearningEventContext,
    SuggestedRule,
)

from conftest import make_rule


@pytest.fixture
def mixed_profile():
    return CustomerProfile(id="cust-1", name="Acme", rules=[
        make_rule("p1", pattern="Ship ID", target_value="bol", status="proposed"),
        make_rule("a1", pattern="Release #", target_value="po", status="active", confidence=0.6),
        make_rule("a2", pattern="Appt", target_value="appointment", status="active", confidence=0.9),
        make_rule("d1", pattern="Cust Ref", target_value="reference", status="deprecated"),
    ])


def status_of(profile, rule_id):
    return next(r.status for r in profile.rules if r.id == rule_id)


class TestLifecycle:
    """proposed -> active -> deprecated -> active."""

    def test_approve_proposed(self, mixed_profile):
        assert approve_rule(mixed_profile, "p1", "admin-1")

        rule = mixed_profile.rules[0]
        assert rule.status == "active"
        assert rule.approved_by == "admin-1"
        assert rule.approved_at is not None

    def test_approve_non_proposed_fails(self, mixed_profile):
        assert not approve_rule(mixed_profile, "d1", "admin-1")
        assert status_of(mixed_profile, "d1") == "deprecated"

    def test_deprecate_clears_approval(self, mixed_profile):
        assert deprecate_rule(mixed_profile, "a1", "admin-1")

        rule = mixed_profile.rules[1]
        assert rule.status == "deprecated"
        assert rule.deprecated_by == "admin-1"
        assert rule.approved_by is None

    def test_reactivate_only_deprecated(self, mixed_profile):
        before = [r.model_dump() for r in mixed_profile.rules]

        assert not reactivate_rule(mixed_profile, "a1", "admin-1")
        assert not reactivate_rule(mixed_profile, "p1", "admin-1")
        assert [r.model_dump() for r in mixed_profile.rules] == before

        assert reactivate_rule(mixed_profile, "d1", "admin-1")
        rule = mixed_profile.rules[3]
        assert rule.status == "active"
        assert rule.deprecated_by is None

    def test_delete_only_proposed(self, mixed_profile):
        assert not delete_rule(mixed_profile, "a1")
        assert not delete_rule(mixed_profile, "d1")
        assert len(mixed_profile.rules) == 4

        assert delete_rule(mixed_profile, "p1")
        assert [r.id for r in mixed_profile.rules] == ["a1", "a2", "d1"]

    def test_missing_rule(self, mixed_profile):
        assert not approve_rule(mixed_profile, "nope", "admin-1")
        assert not delete_rule(mixed_profile, "nope")

    def test_apply_rule_action(self, mixed_profile):
        assert apply_rule_action(mixed_profile, "p1", "approve", "admin-1")
        assert apply_rule_action(mixed_profile, "p1", "deprecate", "admin-1")
        assert status_of(mixed_profile, "p1") == "deprecated"

        with pytest.raises(ValueError):
            apply_rule_action(mixed_profile, "p1", "archive", "admin-1")


class TestLookups:

    def test_grouped(self, mixed_profile):
        grouped = get_rules_grouped(mixed_profile)

        assert [r.id for r in grouped["proposed"]] == ["p1"]
        assert [r.id for r in grouped["active"]] == ["a1", "a2"]
        assert [r.id for r in grouped["deprecated"]] == ["d1"]

    def test_active_sorted_by_confidence(self, mixed_profile):
        assert [r.id for r in get_active_rules(mixed_profile)] == ["a2", "a1"]
        assert get_active_rules(None) == []

    def test_label_map_keyed_lowercase(self, mixed_profile):
        lookup = get_active_label_map_rules(mixed_profile)

        assert set(lookup) == {"release #", "appt"}
        assert lookup["release #"].target_value == "po"


class TestProposals:

    def test_create_proposed_rule_from_label(self, profile):
        suggestion = SuggestedRule(type="label", label="Release #", subtype="po", example_value="44221")
        rule = create_proposed_rule(profile, suggestion, "tender-1", "user-1")

        assert rule.rule_type == "label_map"
        assert rule.status == "proposed"
        assert rule.confidence == 0.5
        assert rule.learned_from_tender == "tender-1"
        assert profile.rules == [rule]

    def test_create_proposed_rule_needs_pattern(self, profile):
        suggestion = SuggestedRule(type="regex", pattern=None, subtype="po", example_value="44221")

        assert create_proposed_rule(profile, suggestion, "tender-1", "user-1") is None
        assert profile.rules == []

    def test_rules_from_events(self, profile):
        events = [
            LearningEvent(id="e1", customer_id="cust-1", tender_id="t-1", field_type="reference_subtype",
                          field_path="reference_numbers[0].type", before_value="unknown", after_value="po",
                          context=LearningEventContext(label_hint="Release #", block_type="pickup")),
            LearningEvent(id="e2", customer_id="cust-1", tender_id="t-1", field_type="cargo_commodity",
                          field_path="cargo.commodity", before_value=None, after_value="Frozen Food",
                          context=LearningEventContext(temperature_value=10)),
            LearningEvent(id="e3", customer_id="cust-1", tender_id="t-1", field_type="cargo_weight",
                          field_path="cargo.weight.value", before_value=100, after_value=200),
        ]
        created = create_proposed_rules_from_events(profile, events, "user-1")

        assert [(r.rule_type, r.pattern, r.target_value, r.scope) for r in created] == [
            ("label_map", "release #", "po", "pickup"),
            ("cargo_hint", "frozen", "Frozen Food", None),
        ]
        assert all(r.status == "proposed" for r in created)

        # same events again: rules already exist
        assert create_proposed_rules_from_events(profile, events, "user-1") == []

    def test_header_block_is_not_a_scope(self, profile):
        event = LearningEvent(id="e1", customer_id="cust-1", tender_id="t-1", field_type="reference_subtype",
                              field_path="reference_numbers[0].type", before_value="unknown",
                              after_value="po", context=LearningEventContext(label_hint="Release #",
                                                                             block_type="header"))
        created = create_proposed_rules_from_events(profile, [event], "user-1")

        assert created[0].scope is None

    def test_apply_suggested_rule_reinforces(self, mixed_profile):
        suggestion = SuggestedRule(type="label", label="RELEASE #", subtype="po", example_value="44221")
        rule = apply_suggested_rule(mixed_profile, suggestion, "t-1", "user-1")

        assert rule.id == "a1"
        assert rule.confidence == pytest.approx(0.7)
        assert len(mixed_profile.rules) == 4

    def test_apply_suggested_rule_caps_confidence(self, mixed_profile):
        suggestion = SuggestedRule(type="label", label="Appt", subtype="appointment", example_value="1")
        apply_suggested_rule(mixed_profile, suggestion, "t-1", "user-1")
        rule = apply_suggested_rule(mixed_profile, suggestion, "t-1", "user-1")

        assert rule.confidence == 1.0

    def test_apply_suggested_rule_creates_active(self, profile):
        suggestion = SuggestedRule(type="regex", pattern=r"^\d+-\d+$", subtype="order", example_value="12-34")
        rule = apply_suggested_rule(profile, suggestion, "t-1", "user-1")

        assert rule.status == "active"
        assert rule.rule_type == "regex_map"
        assert rule.approved_by == "user-1"


class TestTemperatureCategory:

    @pytest.mark.parametrize("value,expected", [(-10, "frozen"), (31.9, "frozen"), (32, "refrigerated"),
                                                (45, "refrigerated"), (46, "dry")])
    def test_by_value(self, value, expected):
        assert temperature_category(value) == expected

    def test_by_mode(self):
        assert temperature_category(mode="Reefer") == "refrigerated"
        assert temperature_category(mode="ambient") == "dry"
        assert temperature_category() is None
