"""
Learning from user corrections: reclassifications, edit events and cargo hints
"""
import re
import logging
from typing import Dict, List, Optional, Sequence

from .config import load_patterns, compile_pattern
from .customer_rules import get_active_rules, temperature_category
from .extractor import get_context
from .schema import (
    Candidate, CargoDetails, CustomerProfile, CustomerRule, LearningEvent,
    LearningEventContext, ReferenceNumber, StructuredShipment, SuggestedRule, utc_now,
)
from .segmenter import DocumentSegmenter, get_segmenter

logger = logging.getLogger(__name__)

TEXT_CONTEXT_BEFORE = 50
TEXT_CONTEXT_AFTER = 30
NEARBY_BEFORE = 40
NEARBY_AFTER = 20


def normalize_value(value: str) -> str:
    """Strip leading zeros and whitespace for value matching"""
    return value.strip().lstrip("0").strip()


def derive_pattern(value: str) -> Optional[str]:
    """Generic regex for a value shape; None for plain numbers"""
    prefix = re.match(r"^([A-Za-z]{2,5})(\d{4,})$", value)
    if prefix:
        return f"^{prefix.group(1)}\\d{{4,}}$"

    dashed = re.match(r"^(\d+)-(\d+)(?:-(\d+))?$", value)
    if dashed:
        if dashed.group(3):
            return r"^\d+-\d+-\d+$"
        return r"^\d+-\d+$"

    return None


def _window(text: str, value: str, before: int, after: int) -> Optional[str]:
    index = text.find(value)
    if index < 0:
        return None
    start = max(0, index - before)
    end = min(len(text), index + len(value) + after)
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return re.sub(r"\s+", " ", snippet).strip()


class LearningDetector:
    """Diffs the classified shipment against the reviewed one"""

    def __init__(self, patterns: Optional[dict] = None, segmenter: Optional[DocumentSegmenter] = None):
        table = (patterns or load_patterns())["learning"]
        self.segmenter = segmenter or (DocumentSegmenter(patterns) if patterns else get_segmenter())
        self.label_context_templates = table["label_context_patterns"]
        self.ignored_labels = [label.lower() for label in table["ignored_labels"]]

    # ------------------------------------------------------------ helpers

    @staticmethod
    def find_candidate(value: str, candidates: Sequence[Candidate]) -> Optional[Candidate]:
        normalized = normalize_value(value)
        for candidate in candidates:
            if candidate.type != "reference_number":
                continue
            if (candidate.value == value or value in candidate.raw_match
                    or normalize_value(candidate.value) == normalized
                    or (normalized and normalized in candidate.raw_match)):
                return candidate
        return None

    @staticmethod
    def context_from_text(text: str, value: str) -> Optional[str]:
        for term in (value, normalize_value(value)):
            if term:
                snippet = _window(text, term, TEXT_CONTEXT_BEFORE, TEXT_CONTEXT_AFTER)
                if snippet:
                    return snippet
        return None

    def extract_label_from_context(self, context: str, value: str) -> Optional[str]:
        """Label text right before the value, e.g. 'Release' in 'Release #: 44221'"""
        escaped = re.escape(value)
        for template in self.label_context_templates:
            pattern = compile_pattern({"pattern": template["pattern"].replace("{value}", escaped)})
            if pattern is None:
                continue
            match = pattern.search(context)
            if match and match.group(1):
                label = match.group(1).strip()
                if len(label) >= 2 and not any(ignored in label.lower() for ignored in self.ignored_labels):
                    return label
        return None

    def block_type_for(self, value: str, text: str, candidate: Optional[Candidate]) -> Optional[str]:
        if candidate is not None:
            position = candidate.position.start
        else:
            position = text.find(value)
            if position < 0:
                return None
        return self.segmenter.block_type_at(text, position)

    # ------------------------------------------------------------ reclassifications

    def detect_reclassifications(self, original: StructuredShipment, final: StructuredShipment,
                                 candidates: Sequence[Candidate], text: str) -> List[SuggestedRule]:
        """Suggested label/regex rules for references whose type the user changed"""
        original_types: Dict[str, str] = {}
        for ref in _all_refs(original):
            original_types[ref.value] = ref.type
            original_types[normalize_value(ref.value)] = ref.type

        suggestions: List[SuggestedRule] = []
        for ref in _all_refs(final):
            before = original_types.get(ref.value) or original_types.get(normalize_value(ref.value))
            if not before or before == ref.type or ref.type == "unknown":
                continue

            candidate = self.find_candidate(ref.value, candidates)
            context = candidate.context if candidate else None
            if not context:
                context = self.context_from_text(text, ref.value)

            label = candidate.label_hint if candidate else None
            if not label and context:
                label = self.extract_label_from_context(context, ref.value)

            block = self.block_type_for(ref.value, text, candidate)
            scope = block if block in ("pickup", "delivery") else None

            if label:
                suggestions.append(SuggestedRule(type="label", label=label, subtype=ref.type,
                                                 example_value=ref.value, context=context or "", scope=scope))
                logger.info(f"Suggesting label rule: {label!r} -> {ref.type}")
            elif context:
                pattern = derive_pattern(ref.value)
                if pattern:
                    suggestions.append(SuggestedRule(type="regex", pattern=pattern, subtype=ref.type,
                                                     example_value=ref.value, context=context, scope=scope))
                    logger.info(f"Suggesting regex rule: {pattern} -> {ref.type}")
            else:
                logger.debug(f"No context for {ref.value!r}, no rule suggested")

        return deduplicate_suggestions(suggestions)

    # ------------------------------------------------------------ edit events

    def _ref_events(self, original_refs: List[ReferenceNumber], final_refs: List[ReferenceNumber],
                    prefix: str, customer_id: str, tender_id: str, candidates: Sequence[Candidate],
                    text: str, now: str) -> List[LearningEvent]:
        by_value: Dict[str, ReferenceNumber] = {}
        for ref in original_refs:
            by_value[ref.value] = ref
            by_value[normalize_value(ref.value)] = ref

        events = []
        for i, ref in enumerate(final_refs):
            before = by_value.get(ref.value) or by_value.get(normalize_value(ref.value))
            if before is None or before.type == ref.type or ref.type == "unknown":
                continue

            candidate = None
            for c in candidates:
                if c.type == "reference_number" and (
                        c.value == ref.value or normalize_value(c.value) == normalize_value(ref.value)):
                    candidate = c
                    break

            path = f"{prefix}[{i}].type"
            events.append(LearningEvent(
                id=f"{tender_id}-{path}-{now}",
                customer_id=customer_id,
                tender_id=tender_id,
                field_type="reference_subtype",
                field_path=path,
                before_value=before.type,
                after_value=ref.type,
                context=LearningEventContext(
                    label_hint=candidate.label_hint if candidate else None,
                    nearby_text=(candidate.context if candidate
                                 else _window(text, ref.value, NEARBY_BEFORE, NEARBY_AFTER)),
                    original_subtype=before.type,
                    block_type=self.block_type_for(ref.value, text, candidate),
                ),
                created_at=now,
            ))
        return events

    @staticmethod
    def _cargo_events(original: CargoDetails, final: CargoDetails, customer_id: str,
                      tender_id: str, now: str) -> List[LearningEvent]:
        events = []
        temperature = final.temperature

        if final.commodity and original.commodity != final.commodity:
            events.append(LearningEvent(
                id=f"{tender_id}-cargo.commodity-{now}",
                customer_id=customer_id,
                tender_id=tender_id,
                field_type="cargo_commodity",
                field_path="cargo.commodity",
                before_value=original.commodity,
                after_value=final.commodity,
                context=LearningEventContext(
                    temperature_value=temperature.value if temperature else None,
                    temperature_mode=temperature.mode if temperature else None,
                ),
                created_at=now,
            ))

        original_mode = original.temperature.mode if original.temperature else None
        final_mode = temperature.mode if temperature else None
        if final_mode and original_mode != final_mode:
            events.append(LearningEvent(
                id=f"{tender_id}-cargo.temperature.mode-{now}",
                customer_id=customer_id,
                tender_id=tender_id,
                field_type="cargo_temp_mode",
                field_path="cargo.temperature.mode",
                before_value=original_mode,
                after_value=final_mode,
                context=LearningEventContext(temperature_value=temperature.value),
                created_at=now,
            ))

        # a 0 -> value fill-in is not a correction
        before_weight = original.weight.value
        after_weight = final.weight.value
        if before_weight and after_weight and before_weight > 0 and after_weight > 0 \
                and before_weight != after_weight:
            events.append(LearningEvent(
                id=f"{tender_id}-cargo.weight.value-{now}",
                customer_id=customer_id,
                tender_id=tender_id,
                field_type="cargo_weight",
                field_path="cargo.weight.value",
                before_value=before_weight,
                after_value=after_weight,
                created_at=now,
            ))
        return events

    def detect_all_edits(self, original: StructuredShipment, final: StructuredShipment,
                         candidates: Sequence[Candidate], text: str,
                         customer_id: Optional[str], tender_id: Optional[str]) -> List[LearningEvent]:
        """Learning events for reference reclassifications and cargo corrections"""
        if not customer_id or not tender_id:
            return []

        now = utc_now()
        events = self._ref_events(original.reference_numbers, final.reference_numbers,
                                  "reference_numbers", customer_id, tender_id, candidates, text, now)
        for i, final_stop in enumerate(final.stops):
            if i >= len(original.stops):
                break
            events.extend(self._ref_events(original.stops[i].reference_numbers,
                                           final_stop.reference_numbers, f"stops[{i}].reference_numbers",
                                           customer_id, tender_id, candidates, text, now))
        events.extend(self._cargo_events(original.cargo, final.cargo, customer_id, tender_id, now))

        logger.info(f"📊 Detected {len(events)} learning events for tender {tender_id}")
        return events


def _all_refs(shipment: StructuredShipment) -> List[ReferenceNumber]:
    refs = list(shipment.reference_numbers)
    for stop in shipment.stops:
        refs.extend(stop.reference_numbers)
    return refs


def deduplicate_suggestions(suggestions: List[SuggestedRule]) -> List[SuggestedRule]:
    seen = set()
    unique = []
    for suggestion in suggestions:
        if suggestion.type == "label":
            key = f"label:{(suggestion.label or '').lower()}"
        else:
            key = f"regex:{suggestion.pattern}"
        if key not in seen:
            seen.add(key)
            unique.append(suggestion)
    return unique


def is_rule_already_learned(suggestion: SuggestedRule, rules: List[CustomerRule]) -> bool:
    """True if an active rule with the same subtype already covers the suggestion"""
    if suggestion.type == "label" and suggestion.label:
        label = suggestion.label.lower()
        return any(r.pattern.lower() == label and r.target_value == suggestion.subtype
                   for r in rules if r.rule_type == "label_map" and r.status == "active")
    if suggestion.type == "regex" and suggestion.pattern:
        return any(r.pattern == suggestion.pattern and r.target_value == suggestion.subtype
                   for r in rules if r.rule_type == "regex_map" and r.status == "active")
    return False


def apply_learned_cargo_defaults(profile: CustomerProfile, events: List[LearningEvent]) -> bool:
    """Write the first learned commodity per temperature category; never overwrite"""
    by_temp = profile.cargo_hints.commodity_by_temp
    updated = False
    for event in events:
        if event.field_type != "cargo_commodity" or not event.after_value:
            continue
        category = temperature_category(event.context.temperature_value, event.context.temperature_mode)
        if category is None:
            continue
        if getattr(by_temp, category):
            logger.debug(f"Commodity for {category} already set, keeping it")
            continue
        setattr(by_temp, category, str(event.after_value))
        updated = True
        logger.info(f"✅ Learned {category} commodity: {event.after_value}")

    if updated:
        profile.updated_at = utc_now()
    return updated


_default_detector: Optional[LearningDetector] = None


def get_detector() -> LearningDetector:
    global _default_detector
    if _default_detector is None:
        _default_detector = LearningDetector()
    return _default_detector


def detect_reclassifications(original: StructuredShipment, final: StructuredShipment,
                             candidates: Sequence[Candidate], text: str) -> List[SuggestedRule]:
    return get_detector().detect_reclassifications(original, final, candidates, text)


def detect_all_edits(original: StructuredShipment, final: StructuredShipment,
                     candidates: Sequence[Candidate], text: str,
                     customer_id: Optional[str], tender_id: Optional[str]) -> List[LearningEvent]:
    return get_detector().detect_all_edits(original, final, candidates, text, customer_id, tender_id)
