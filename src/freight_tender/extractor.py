"""
Regex and heuristic candidate extraction with customer rule application
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .config import load_patterns, compile_pattern, compile_patterns
from .customer_rules import get_active_label_map_rules, get_active_regex_map_rules
from .schema import (
    Candidate, CandidatePosition, CustomerProfile, CustomerRule,
    ExtractionMetadata, ExtractionResult, RuleLogEntry,
)
from .segmenter import DocumentSegmenter, SegmentationResult, get_segmenter

logger = logging.getLogger(__name__)

EXTRACTOR_VERSION = "0.5.0"

MIN_REF_LENGTH = 4
MAX_REF_LENGTH = 25
MAX_LABEL_DISTANCE = 80
PHONE_LOOKBACK = 60
NON_REFERENCE_LOOKBACK = 40
CONTEXT_WINDOW = 40

# same-offset tie break between candidate types
TYPE_PRIORITY = {
    "date": 0,
    "time": 1,
    "datetime": 2,
    "city_state_zip": 3,
    "address": 4,
    "weight": 5,
    "pieces": 6,
    "dimensions": 7,
    "temperature": 8,
    "commodity": 9,
    "stop_block": 10,
    "reference_number": 11,
}

DEFINITE_PHONE_REASONS = ("matches_phone_pattern", "10_digit_number")

FULL_PHONE_RE = re.compile(r"\d{3}[-.\s]?\d{3}[-.\s]?\d{4}")
LABEL_CONTEXT_RE = re.compile(r"\b(load|order|po|ref|bol|confirmation|release)\b", re.IGNORECASE)


@dataclass
class CandidatePattern:
    """One compiled entry of the candidate pattern table"""
    name: str
    type: str
    regex: re.Pattern
    confidence: str
    group: int = 0
    subtype: Optional[str] = None


@dataclass
class PhoneCheck:
    is_phone: bool
    reason: str = ""


@dataclass
class LabelHint:
    hint: str
    subtype: str
    source: str
    distance: int
    rule: Optional[CustomerRule] = None


@dataclass
class _Hit:
    candidate: Candidate
    order: int
    used_customer_rule: bool = False
    applied: List[RuleLogEntry] = field(default_factory=list)


def get_context(text: str, start: int, end: int, window: int = CONTEXT_WINDOW) -> str:
    """Surrounding text with ellipses on truncated sides and whitespace collapsed"""
    ctx_start = max(0, start - window)
    ctx_end = min(len(text), end + window)
    context = text[ctx_start:ctx_end]
    if ctx_start > 0:
        context = "..." + context
    if ctx_end < len(text):
        context = context + "..."
    return re.sub(r"\s+", " ", context)


def rule_applies_to_block(rule: CustomerRule, block_type: str) -> bool:
    """Scoped rules fire only in their block; header rules also cover unknown zones"""
    if rule.scope is None:
        return True
    if rule.scope == block_type:
        return True
    return rule.scope == "header" and block_type == "unknown"


class CandidateExtractor:
    """Deterministic candidate extractor"""

    def __init__(self, patterns: Optional[dict] = None, segmenter: Optional[DocumentSegmenter] = None):
        table = (patterns or load_patterns())["extractor"]
        self.segmenter = segmenter or (DocumentSegmenter(patterns) if patterns else get_segmenter())
        self.phone_patterns = compile_patterns(table["phone_patterns"])
        self.partial_phone_patterns = compile_patterns(table["partial_phone_patterns"])
        self.phone_labels = compile_patterns(table["phone_labels"])
        self.non_reference_labels = compile_patterns(table["non_reference_labels"])
        self.reference_labels = self._compile_reference_labels(table["reference_labels"])
        self.candidate_patterns = self._compile_candidate_patterns(table["candidates"])

    def _compile_reference_labels(self, entries: List[dict]) -> List[Tuple[re.Pattern, str]]:
        labels = []
        for entry in entries:
            pattern = compile_pattern(entry)
            if pattern is not None:
                labels.append((pattern, entry["subtype"]))
        return labels

    def _compile_candidate_patterns(self, entries: List[dict]) -> List[CandidatePattern]:
        compiled = []
        for entry in entries:
            regex = compile_pattern(entry)
            if regex is None:
                continue
            compiled.append(CandidatePattern(
                name=entry["name"],
                type=entry["type"],
                regex=regex,
                confidence=entry["confidence"],
                group=entry.get("group", 0),
                subtype=entry.get("subtype"),
            ))
        return compiled

    # ------------------------------------------------------------ guards

    def _has_phone_label(self, text: str, position: int) -> bool:
        lookback = text[max(0, position - PHONE_LOOKBACK):position]
        return any(p.search(lookback) for p in self.phone_labels)

    def is_definitely_phone(self, value: str, text: str, position: int) -> PhoneCheck:
        """Decide whether a numeric value is (part of) a phone number"""
        clean = re.sub(r"\s+", " ", value).strip()
        digits = re.sub(r"\D", "", clean)

        if any(p.search(clean) for p in self.phone_patterns):
            return PhoneCheck(True, "matches_phone_pattern")

        compact = re.sub(r"\s+", "", clean)
        if any(p.search(compact) for p in self.partial_phone_patterns):
            return PhoneCheck(True, "partial_phone")

        if re.fullmatch(r"\d{10}", digits):
            return PhoneCheck(True, "10_digit_number")

        if re.fullmatch(r"\d{7}", digits) and self._has_phone_label(text, position):
            return PhoneCheck(True, "7_digit_with_phone_label")

        if self._has_phone_label(text, position):
            return PhoneCheck(True, "phone_label_nearby")

        # OCR can split a phone number into fragments next to the value
        window = text[max(0, position - 20):min(len(text), position + len(value) + 20)]
        if FULL_PHONE_RE.search(window):
            without_value = window.replace(value, "XXX", 1)
            if FULL_PHONE_RE.search(without_value) or len(digits) < 6:
                return PhoneCheck(True, "adjacent_to_phone")

        return PhoneCheck(False)

    def has_non_reference_label(self, text: str, position: int) -> bool:
        lookback = text[max(0, position - NON_REFERENCE_LOOKBACK):position]
        return any(p.search(lookback) for p in self.non_reference_labels)

    # ------------------------------------------------------------ rules

    @staticmethod
    def _nearest(pattern: re.Pattern, window: str) -> Optional[Tuple[re.Match, int]]:
        best = None
        for match in pattern.finditer(window):
            distance = len(window) - match.end()
            if best is None or distance < best[1]:
                best = (match, distance)
        return best

    def find_label_hint(self, text: str, position: int, block_type: str,
                        label_rules: Dict[str, CustomerRule],
                        skipped: List[RuleLogEntry], value: str) -> Optional[LabelHint]:
        """Closest label before the value: customer label rules first, then generic labels"""
        window = text[max(0, position - MAX_LABEL_DISTANCE):position]

        best: Optional[LabelHint] = None
        for label, rule in label_rules.items():
            prefix = r"\b" if re.match(r"\w", label) else ""
            pattern = re.compile(prefix + re.escape(label) + r"\s*[#:]?\s*", re.IGNORECASE)
            found = self._nearest(pattern, window)
            if found is None:
                continue
            match, distance = found
            if not rule_applies_to_block(rule, block_type):
                skipped.append(RuleLogEntry(
                    rule=f"customer_label:{rule.pattern}",
                    candidate=value,
                    reason=f"scope {rule.scope} does not match block {block_type}",
                ))
                continue
            if best is None or distance < best.distance:
                best = LabelHint(match.group(0).strip(), rule.target_value, "customer", distance, rule)
        if best is not None:
            return best

        for pattern, subtype in self.reference_labels:
            found = self._nearest(pattern, window)
            if found is None:
                continue
            match, distance = found
            if best is None or distance < best.distance:
                best = LabelHint(match.group(0).strip(), subtype, "generic", distance)
        return best

    @staticmethod
    def match_customer_regex_rules(value: str, block_type: str,
                                   regex_rules: Dict[str, CustomerRule]) -> Optional[CustomerRule]:
        for rule in regex_rules.values():
            try:
                regex = re.compile(rule.pattern, re.IGNORECASE)
            except re.error:
                logger.warning(f"Invalid customer regex pattern: {rule.pattern}")
                continue
            if regex.search(value) and rule_applies_to_block(rule, block_type):
                return rule
        return None

    @staticmethod
    def has_label_context(text: str, start: int, value: str) -> bool:
        nearby = text[max(0, start - 100):start + len(value) + 50]
        return bool(re.search(r"[#:]", nearby) or LABEL_CONTEXT_RE.search(nearby))

    # ------------------------------------------------------------ extraction

    def extract(self, text: str, customer_profile: Optional[CustomerProfile] = None) -> ExtractionResult:
        """Scan text with every candidate pattern and resolve reference subtypes"""
        label_rules = get_active_label_map_rules(customer_profile)
        regex_rules = get_active_regex_map_rules(customer_profile)
        segmentation: Optional[SegmentationResult] = None

        hits: List[_Hit] = []
        skipped: List[RuleLogEntry] = []
        seen = set()

        for order, config in enumerate(self.candidate_patterns):
            for match in config.regex.finditer(text):
                pos_key = (match.start(), match.end())
                if pos_key in seen:
                    continue

                raw_value = match.group(config.group)
                if raw_value is None:
                    continue
                value = raw_value
                value_start = match.start(config.group)
                if config.type in ("weight", "pieces"):
                    value = value.replace(",", "")
                value = value.strip()

                label_hint = None
                subtype = config.subtype
                hit = _Hit(candidate=None, order=order)

                if config.type == "reference_number":
                    phone = self.is_definitely_phone(value, text, match.start())
                    if phone.is_phone:
                        trusted_label = config.confidence == "high" and config.subtype
                        if not trusted_label or phone.reason in DEFINITE_PHONE_REASONS:
                            skipped.append(RuleLogEntry(rule="phone_exclusion", candidate=value,
                                                        reason=phone.reason))
                            continue

                    if not MIN_REF_LENGTH <= len(value) <= MAX_REF_LENGTH:
                        skipped.append(RuleLogEntry(
                            rule="length_bounds", candidate=value,
                            reason=f"length {len(value)} outside {MIN_REF_LENGTH}-{MAX_REF_LENGTH}",
                        ))
                        continue

                    if self.has_non_reference_label(text, match.start()):
                        skipped.append(RuleLogEntry(
                            rule="non_reference_label", candidate=value,
                            reason="near non-reference label (total miles, etc.)",
                        ))
                        continue

                    if segmentation is None:
                        segmentation = self.segmenter.segment(text)
                    block_type = self.segmenter.block_type_at(text, value_start, segmentation)

                    regex_rule = self.match_customer_regex_rules(value, block_type, regex_rules)
                    if regex_rule is not None:
                        if self.has_label_context(text, match.start(), value):
                            subtype = regex_rule.target_value
                            hit.used_customer_rule = True
                            hit.applied.append(RuleLogEntry(
                                rule=f"customer_regex:{regex_rule.pattern}", candidate=value,
                                reason=f"block={block_type}",
                            ))
                        else:
                            skipped.append(RuleLogEntry(rule=f"customer_regex:{regex_rule.pattern}",
                                                        candidate=value, reason="no_label_context_nearby"))

                    hint = self.find_label_hint(text, value_start, block_type, label_rules, skipped, value)
                    if hint is not None:
                        label_hint = hint.hint
                        if not hit.used_customer_rule:
                            subtype = hint.subtype
                            if hint.source == "customer":
                                hit.used_customer_rule = True
                                hit.applied.append(RuleLogEntry(
                                    rule=f"customer_label:{hint.rule.pattern}", candidate=value,
                                    reason=f"block={block_type}, distance={hint.distance}",
                                ))

                hit.candidate = Candidate(
                    type=config.type,
                    value=value,
                    raw_match=match.group(0),
                    label_hint=label_hint,
                    subtype=subtype,
                    confidence=config.confidence,
                    position=CandidatePosition(start=match.start(), end=match.end()),
                    context=get_context(text, match.start(), match.end()),
                )
                hits.append(hit)
                seen.add(pos_key)

        hits.sort(key=lambda h: (h.candidate.position.start, TYPE_PRIORITY[h.candidate.type], h.order))
        kept = self.filter_overlapping(hits)

        applied = [entry for hit in kept for entry in hit.applied]
        used_rules = sum(1 for hit in kept if hit.used_customer_rule)

        metadata = ExtractionMetadata(
            text_length=len(text),
            version=EXTRACTOR_VERSION,
            customer_id=customer_profile.id if customer_profile else None,
            applied_customer_rules=used_rules,
            rules_applied_count=len(applied),
            rules_skipped_count=len(skipped),
            rules_applied_details=applied,
            rules_skipped_reasons=skipped,
        )
        logger.info(f"Extracted {len(kept)} candidates ({used_rules} resolved by customer rules)")
        return ExtractionResult(candidates=[h.candidate for h in kept], metadata=metadata)

    @staticmethod
    def filter_overlapping(hits: List[_Hit]) -> List[_Hit]:
        """Drop low-confidence or reference candidates overlapping a better one"""
        kept: List[_Hit] = []
        for hit in hits:
            candidate = hit.candidate
            dominated = False
            for existing in kept:
                other = existing.candidate
                overlaps = (candidate.position.start < other.position.end
                            and candidate.position.end > other.position.start)
                if not overlaps:
                    continue
                if candidate.confidence == "low" and other.confidence != "low":
                    dominated = True
                    break
                if candidate.type == "reference_number" and other.type != "reference_number":
                    dominated = True
                    break
            if not dominated:
                kept.append(hit)
        return kept


_default_extractor: Optional[CandidateExtractor] = None


def get_extractor() -> CandidateExtractor:
    global _default_extractor
    if _default_extractor is None:
        _default_extractor = CandidateExtractor()
    return _default_extractor


def extract_candidates(text: str, customer_profile: Optional[CustomerProfile] = None) -> ExtractionResult:
    return get_extractor().extract(text, customer_profile)
