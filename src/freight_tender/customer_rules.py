"""
Customer rule lifecycle and active-rule lookups
"""
import uuid
import logging
from typing import Dict, List, Optional

from .schema import CustomerProfile, CustomerRule, LearningEvent, SuggestedRule, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RULE_CONFIDENCE = 0.5
CONFIDENCE_STEP = 0.1


def temperature_category(value: Optional[float] = None, mode: Optional[str] = None) -> Optional[str]:
    """frozen below 32F, refrigerated 32-45F inclusive, dry above; falls back to mode keywords"""
    if value is not None:
        if value < 32:
            return "frozen"
        if value <= 45:
            return "refrigerated"
        return "dry"
    if mode:
        mode = mode.lower()
        if mode == "frozen":
            return "frozen"
        if mode in ("refrigerated", "reefer"):
            return "refrigerated"
        if mode in ("dry", "ambient"):
            return "dry"
    return None


def _find_rule(profile: CustomerProfile, rule_id: str) -> Optional[CustomerRule]:
    for rule in profile.rules:
        if rule.id == rule_id:
            return rule
    return None


def _touch(profile: CustomerProfile, rule: CustomerRule) -> None:
    now = utc_now()
    rule.updated_at = now
    profile.updated_at = now


# ---------------------------------------------------------------- lifecycle

def approve_rule(profile: CustomerProfile, rule_id: str, approved_by: str) -> bool:
    """proposed -> active"""
    rule = _find_rule(profile, rule_id)
    if rule is None or rule.status != "proposed":
        return False
    rule.status = "active"
    rule.approved_by = approved_by
    rule.approved_at = utc_now()
    _touch(profile, rule)
    logger.info(f"✅ Approved rule {rule_id} ({rule.rule_type}: {rule.pattern} -> {rule.target_value})")
    return True


def deprecate_rule(profile: CustomerProfile, rule_id: str, deprecated_by: str) -> bool:
    """active -> deprecated"""
    rule = _find_rule(profile, rule_id)
    if rule is None or rule.status != "active":
        return False
    rule.status = "deprecated"
    rule.deprecated_by = deprecated_by
    rule.deprecated_at = utc_now()
    rule.approved_by = None
    rule.approved_at = None
    _touch(profile, rule)
    logger.info(f"Deprecated rule {rule_id}")
    return True


def reactivate_rule(profile: CustomerProfile, rule_id: str, approved_by: str) -> bool:
    """deprecated -> active, re-stamping approval"""
    rule = _find_rule(profile, rule_id)
    if rule is None or rule.status != "deprecated":
        return False
    rule.status = "active"
    rule.approved_by = approved_by
    rule.approved_at = utc_now()
    rule.deprecated_by = None
    rule.deprecated_at = None
    _touch(profile, rule)
    logger.info(f"Reactivated rule {rule_id}")
    return True


def delete_rule(profile: CustomerProfile, rule_id: str) -> bool:
    """Remove a rule; only proposed rules can be deleted"""
    rule = _find_rule(profile, rule_id)
    if rule is None or rule.status != "proposed":
        return False
    profile.rules = [r for r in profile.rules if r.id != rule_id]
    profile.updated_at = utc_now()
    logger.info(f"Deleted proposed rule {rule_id}")
    return True


RULE_ACTIONS = {
    "approve": approve_rule,
    "deprecate": deprecate_rule,
    "reactivate": reactivate_rule,
}


def apply_rule_action(profile: CustomerProfile, rule_id: str, action: str, actor: str) -> bool:
    if action == "delete":
        return delete_rule(profile, rule_id)
    if action not in RULE_ACTIONS:
        raise ValueError(f"Unknown rule action: {action}")
    return RULE_ACTIONS[action](profile, rule_id, actor)


# ---------------------------------------------------------------- lookups

def get_rules_grouped(profile: CustomerProfile) -> Dict[str, List[CustomerRule]]:
    grouped: Dict[str, List[CustomerRule]] = {"proposed": [], "active": [], "deprecated": []}
    for rule in profile.rules:
        grouped[rule.status].append(rule)
    return grouped


def get_active_rules(profile: Optional[CustomerProfile], rule_type: Optional[str] = None) -> List[CustomerRule]:
    """Active rules, highest confidence first"""
    if profile is None:
        return []
    rules = [r for r in profile.rules
             if r.status == "active" and (rule_type is None or r.rule_type == rule_type)]
    return sorted(rules, key=lambda r: -r.confidence)


def _lookup(rules: List[CustomerRule]) -> Dict[str, CustomerRule]:
    lookup: Dict[str, CustomerRule] = {}
    for rule in rules:
        lookup.setdefault(rule.pattern.lower(), rule)
    return lookup


def get_active_label_map_rules(profile: Optional[CustomerProfile]) -> Dict[str, CustomerRule]:
    """Active label rules keyed by lower-cased label"""
    return _lookup(get_active_rules(profile, "label_map"))


def get_active_regex_map_rules(profile: Optional[CustomerProfile]) -> Dict[str, CustomerRule]:
    """Active regex rules keyed by lower-cased pattern; compile from rule.pattern"""
    return _lookup(get_active_rules(profile, "regex_map"))


def get_active_cargo_hint_rules(profile: Optional[CustomerProfile]) -> Dict[str, CustomerRule]:
    """Active cargo hint rules keyed by temperature category"""
    return _lookup(get_active_rules(profile, "cargo_hint"))


def _has_rule(profile: CustomerProfile, rule_type: str, pattern: str) -> bool:
    pattern = pattern.lower()
    return any(r.rule_type == rule_type and r.pattern.lower() == pattern for r in profile.rules)


# ---------------------------------------------------------------- proposals

def _new_rule(profile: CustomerProfile, **kwargs) -> CustomerRule:
    rule = CustomerRule(id=str(uuid.uuid4()), customer_id=profile.id, **kwargs)
    profile.rules.append(rule)
    profile.updated_at = utc_now()
    return rule


def create_proposed_rule(profile: CustomerProfile, suggestion: SuggestedRule,
                         tender_id: Optional[str], created_by: Optional[str]) -> Optional[CustomerRule]:
    """Turn a suggested rule into a proposed customer rule"""
    if suggestion.type == "label":
        rule_type, pattern = "label_map", suggestion.label
    else:
        rule_type, pattern = "regex_map", suggestion.pattern
    if not pattern:
        return None

    return _new_rule(
        profile,
        rule_type=rule_type,
        pattern=pattern,
        target_value=suggestion.subtype,
        scope=suggestion.scope,
        description=f"Learned from tender: {suggestion.example_value}",
        status="proposed",
        confidence=DEFAULT_RULE_CONFIDENCE,
        created_by=created_by,
        learned_from_tender=tender_id,
    )


def create_proposed_rules_from_events(profile: CustomerProfile, events: List[LearningEvent],
                                      created_by: Optional[str]) -> List[CustomerRule]:
    """Propose label_map / cargo_hint rules from learning events"""
    created = []
    for event in events:
        if not event.customer_id or not event.tender_id:
            continue

        rule_type = None
        pattern = ""
        target = ""
        scope = None
        description = ""

        if event.field_type == "reference_subtype" and event.context.label_hint:
            rule_type = "label_map"
            pattern = event.context.label_hint
            target = str(event.after_value)
            if event.context.block_type in ("pickup", "delivery"):
                scope = event.context.block_type
            description = f'Label "{pattern}" maps to {target}'
        elif event.field_type == "cargo_commodity":
            category = temperature_category(event.context.temperature_value,
                                            event.context.temperature_mode)
            if category:
                rule_type = "cargo_hint"
                pattern = category
                target = str(event.after_value)
                description = f"{pattern} commodity default: {target}"

        if not (rule_type and pattern and target):
            continue
        if _has_rule(profile, rule_type, pattern):
            continue

        rule = _new_rule(
            profile,
            rule_type=rule_type,
            pattern=pattern.lower(),
            target_value=target,
            scope=scope,
            description=description,
            status="proposed",
            confidence=DEFAULT_RULE_CONFIDENCE,
            created_by=created_by,
            learned_from_tender=event.tender_id,
        )
        created.append(rule)
        logger.info(f"📊 Proposed rule: {description}")

    return created


def apply_suggested_rule(profile: CustomerProfile, suggestion: SuggestedRule,
                         tender_id: Optional[str], actor: Optional[str]) -> CustomerRule:
    """Apply a user-accepted suggestion: reinforce an existing rule or create an active one"""
    rule_type = "label_map" if suggestion.type == "label" else "regex_map"
    pattern = (suggestion.label if suggestion.type == "label" else suggestion.pattern) or ""

    for rule in profile.rules:
        if rule.rule_type == rule_type and rule.pattern.lower() == pattern.lower():
            rule.confidence = min(1.0, round(rule.confidence + CONFIDENCE_STEP, 4))
            rule.target_value = suggestion.subtype
            _touch(profile, rule)
            logger.info(f"Reinforced rule {rule.id}: confidence={rule.confidence}")
            return rule

    now = utc_now()
    return _new_rule(
        profile,
        rule_type=rule_type,
        pattern=pattern,
        target_value=suggestion.subtype,
        scope=suggestion.scope,
        description=f"Learned from tender: {suggestion.example_value}",
        status="active",
        confidence=DEFAULT_RULE_CONFIDENCE,
        created_by=actor,
        approved_by=actor,
        approved_at=now,
        learned_from_tender=tender_id,
    )
