"""
LLM-backed shipment classification followed by normalization, verification and cargo defaults
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .customer_rules import get_active_cargo_hint_rules, get_active_rules, temperature_category
from .errors import ClassificationError
from .llm_router import LLMRouter
from .normalizer import ShipmentNormalizer, normalize_shipment
from .schema import (
    Candidate, ClassificationMetadata, ClassificationResult, CustomerProfile, FieldProvenance,
    LLMUsage, REFERENCE_SUBTYPES, StructuredShipment, utc_now,
)
from .verifier import verify_shipment

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a precise load tender extractor for freight brokerage. Your only data sources are the provided original text and the extracted candidates. Never invent, infer, truncate or guess a value; use null when no exact match exists in the candidates or the text.

Reference numbers:
- Subtypes: po, bol, order, pickup, delivery, appointment, reference, confirmation, pro, unknown.
- When a candidate is marked [HIGH CONFIDENCE - TRUST THIS], use that subtype exactly.
- "Load #" followed by a number is the BOL (shipment identifier).
- Use the label for classification ("PO #:" is po, "Release #:" is po, "Confirmation #:" is confirmation).
- Header references (Load #, PO outside stop blocks) go in reference_numbers. Stop references (Pickup #, Delivery #, Appt #, Confirmation # inside a stop block) go in stops[].reference_numbers.
- Never classify phone numbers, street numbers, dates, weights or free text as references. Use "unknown" when unclear.

Cargo:
- Prefer header totals. Remove thousands separators ("Total Lbs: 22,176" is weight 22176).
- Use weight candidates directly.
- Temperature is the exact number ("-10" is -10). Below 32F the mode is frozen, 32-45F is refrigerated.
- Commodity comes from the notes or cargo description.

Stops:
- Pickups before deliveries, sequence starting at 1.
- Parse city, state and zip separately when candidates provide them.
- Date and time exactly as written; appointment_required is true when an appointment is requested.

Return strict JSON matching the schema with no extra properties and no text outside the JSON."""

_NULLABLE_STRING = {"type": ["string", "null"]}
_NULLABLE_NUMBER = {"type": ["number", "null"]}


def _object(properties: Dict, nullable: bool = False) -> Dict:
    return {
        "type": ["object", "null"] if nullable else "object",
        "additionalProperties": False,
        "properties": properties,
        "required": list(properties),
    }


def _enum(values: Sequence[str], nullable: bool = False) -> Dict:
    if nullable:
        return {"type": ["string", "null"], "enum": list(values) + [None]}
    return {"type": "string", "enum": list(values)}


_REFERENCE_SCHEMA = _object({
    "type": _enum(REFERENCE_SUBTYPES),
    "value": {"type": "string"},
    "applies_to": _enum(["shipment", "pickup", "delivery", "stop"], nullable=True),
})

# strict structured outputs need every property listed as required
RESPONSE_SCHEMA = _object({
    "reference_numbers": {"type": "array", "items": _REFERENCE_SCHEMA},
    "stops": {"type": "array", "items": _object({
        "type": _enum(["pickup", "delivery"]),
        "sequence": {"type": "integer"},
        "location": _object({
            "name": _NULLABLE_STRING, "address": _NULLABLE_STRING, "city": _NULLABLE_STRING,
            "state": _NULLABLE_STRING, "zip": _NULLABLE_STRING, "country": _NULLABLE_STRING,
        }),
        "schedule": _object({
            "date": _NULLABLE_STRING,
            "time": _NULLABLE_STRING,
            "appointment_required": {"type": ["boolean", "null"]},
        }),
        "reference_numbers": {"type": "array", "items": _REFERENCE_SCHEMA},
        "notes": _NULLABLE_STRING,
    })},
    "cargo": _object({
        "weight": _object({"value": _NULLABLE_NUMBER, "unit": _enum(["lbs", "kg"], nullable=True)}),
        "pieces": _object({"count": {"type": ["integer", "null"]}, "type": _NULLABLE_STRING}),
        "dimensions": _object({
            "length": _NULLABLE_NUMBER, "width": _NULLABLE_NUMBER, "height": _NULLABLE_NUMBER,
            "unit": _enum(["in", "cm", "ft"], nullable=True),
        }, nullable=True),
        "commodity": _NULLABLE_STRING,
        "temperature": _object({
            "value": _NULLABLE_NUMBER,
            "unit": _enum(["F", "C"], nullable=True),
            "mode": _enum(["frozen", "refrigerated", "dry"], nullable=True),
        }, nullable=True),
    }),
    "unclassified_notes": {"type": "array", "items": {"type": "string"}},
})


def summarize_candidates(candidates: Sequence[Candidate]) -> str:
    lines = []
    for c in candidates:
        line = f'- {c.type}: "{c.value}"'
        if c.label_hint:
            line += f' (label: "{c.label_hint}")'
        if c.subtype and c.subtype != "unknown":
            line += f" [subtype: {c.subtype}]"
            if c.confidence == "high":
                line += " [HIGH CONFIDENCE - TRUST THIS]"
        line += f' | context: "{c.context}"'
        lines.append(line)
    return "\n".join(lines)


def build_customer_context(profile: CustomerProfile) -> str:
    """Customer-specific rules rendered for the prompt"""
    lines = [f"\nCUSTOMER-SPECIFIC RULES ({profile.name}):"]
    active = get_active_rules(profile)

    label_rules = [r for r in active if r.rule_type == "label_map"]
    if label_rules:
        lines.append("Reference Label Mappings:")
        for rule in label_rules:
            scope = f" (in {rule.scope} section)" if rule.scope else ""
            lines.append(f'  - "{rule.pattern}" -> {rule.target_value.upper()}{scope}')

    regex_rules = [r for r in active if r.rule_type == "regex_map"]
    if regex_rules:
        lines.append("Reference Number Patterns:")
        for rule in regex_rules:
            description = f" ({rule.description})" if rule.description else ""
            lines.append(f"  - Pattern /{rule.pattern}/ -> {rule.target_value.upper()}{description}")

    hints = profile.stop_parsing_hints
    if hints.pickup_keywords or hints.delivery_keywords or hints.stop_delimiter:
        lines.append("Stop Parsing Hints:")
        if hints.pickup_keywords:
            lines.append(f"  - Pickup keywords: {', '.join(hints.pickup_keywords)}")
        if hints.delivery_keywords:
            lines.append(f"  - Delivery keywords: {', '.join(hints.delivery_keywords)}")
        if hints.stop_delimiter:
            lines.append(f'  - Stop delimiter: "{hints.stop_delimiter}"')

    cargo = profile.cargo_hints
    by_temp = cargo.commodity_by_temp
    if by_temp.frozen or by_temp.refrigerated or by_temp.dry or cargo.default_commodity or cargo.default_temp_mode:
        lines.append("Cargo Rules for this customer:")
        if by_temp.frozen:
            lines.append(f'  - If temperature is frozen (< 32F): commodity = "{by_temp.frozen}"')
        if by_temp.refrigerated:
            lines.append(f'  - If temperature is refrigerated (32-45F): commodity = "{by_temp.refrigerated}"')
        if by_temp.dry:
            lines.append(f'  - If no temperature/dry: commodity = "{by_temp.dry}"')
        if cargo.default_commodity:
            lines.append(f'  - Default commodity: "{cargo.default_commodity}"')
        if cargo.default_temp_mode:
            lines.append(f"  - Default temperature mode: {cargo.default_temp_mode}")

    lines.append("Apply these customer-specific rules when classifying this shipment.\n")
    return "\n".join(lines)


def build_user_prompt(text: str, candidates: Sequence[Candidate],
                      customer_profile: Optional[CustomerProfile] = None) -> str:
    summary = summarize_candidates(candidates) or "(no candidates extracted)"
    customer = build_customer_context(customer_profile) if customer_profile else ""
    return (f'ORIGINAL TENDER TEXT:\n"""\n{text}\n"""\n\n'
            f"EXTRACTED CANDIDATES:\n{summary}\n{customer}\n"
            "Please structure this into a shipment schema. Use null for any field not clearly "
            "present in the text. Do not invent data.")


class ShipmentClassifier:
    """One model call per classification; retries are the caller's business"""

    def __init__(self, router: LLMRouter, normalizer: Optional[ShipmentNormalizer] = None):
        self.router = router
        self.normalizer = normalizer

    def classify(self, text: str, candidates: Sequence[Candidate],
                 customer_profile: Optional[CustomerProfile] = None) -> Tuple[StructuredShipment, LLMUsage]:
        """Raw model output validated into a StructuredShipment"""
        user_prompt = build_user_prompt(text, candidates, customer_profile)
        data, usage = self.router.complete_json(SYSTEM_PROMPT, user_prompt, RESPONSE_SCHEMA,
                                                "structured_shipment")
        data["classification_metadata"] = ClassificationMetadata(model=usage.model).model_dump()
        try:
            shipment = StructuredShipment.model_validate(data)
        except ValidationError as e:
            usage.success = False
            usage.error = f"schema_validation: {e.error_count()} errors"
            logger.error(f"❌ LLM output failed schema validation: {e}")
            raise ClassificationError("LLM output does not match the shipment schema", usage) from e
        return shipment, usage

    def classify_and_verify(self, text: str, candidates: Sequence[Candidate],
                            customer_profile: Optional[CustomerProfile] = None,
                            tender_source: str = "file") -> ClassificationResult:
        shipment, usage = self.classify(text, candidates, customer_profile)

        if self.normalizer is not None:
            normalized, normalization = self.normalizer.normalize(shipment, text, candidates)
        else:
            normalized, normalization = normalize_shipment(shipment, text, candidates)

        # verify before defaults so learned values are not flagged as unsupported
        verification = verify_shipment(normalized, candidates, text, tender_source=tender_source)
        provenance = dict(verification.provenance)
        final = apply_cargo_defaults(verification.shipment, customer_profile, provenance)

        logger.info(f"📊 Classified shipment: {len(final.stops)} stops, "
                    f"{len(final.reference_numbers)} shipment refs, {len(verification.warnings)} warnings")
        return ClassificationResult(
            shipment=final,
            warnings=verification.warnings,
            provenance=provenance,
            normalization=normalization,
            usage=usage,
        )


HINT_CONFIDENCE = 0.9


def apply_cargo_defaults(shipment: StructuredShipment, customer_profile: Optional[CustomerProfile],
                         provenance: Optional[Dict[str, FieldProvenance]] = None) -> StructuredShipment:
    """Fill blank cargo fields from the customer's learned hints, recording rule provenance"""
    if customer_profile is None:
        return shipment
    provenance = provenance if provenance is not None else {}
    hints = customer_profile.cargo_hints
    cargo_rules = get_active_cargo_hint_rules(customer_profile)
    result = shipment.model_copy(deep=True)
    cargo = result.cargo
    now = utc_now()

    if not cargo.commodity:
        temperature = cargo.temperature
        category = temperature_category(temperature.value if temperature else None,
                                        temperature.mode if temperature else None)
        if category:
            rule = cargo_rules.get(category)
            learned = rule.target_value if rule else getattr(hints.commodity_by_temp, category)
            if learned:
                cargo.commodity = learned
                provenance["cargo.commodity"] = FieldProvenance(
                    source_type="rule",
                    confidence=rule.confidence if rule else HINT_CONFIDENCE,
                    reason=(rule.description if rule and rule.description
                            else f"Customer {category} commodity default"),
                    applied_at=now,
                )
                logger.info(f"Applied {category} commodity default: {learned!r}")

    if not cargo.commodity and hints.default_commodity:
        cargo.commodity = hints.default_commodity
        provenance["cargo.commodity"] = FieldProvenance(
            source_type="rule", confidence=HINT_CONFIDENCE,
            reason="Customer default commodity", applied_at=now)
        logger.info(f"Applied default commodity: {hints.default_commodity!r}")

    if cargo.temperature is not None and not cargo.temperature.mode and hints.default_temp_mode:
        cargo.temperature.mode = hints.default_temp_mode
        provenance["cargo.temperature.mode"] = FieldProvenance(
            source_type="rule", confidence=HINT_CONFIDENCE,
            reason="Customer default temperature mode", applied_at=now)
        logger.info(f"Applied default temperature mode: {hints.default_temp_mode}")

    return result


def classify_and_verify_shipment(text: str, candidates: Sequence[Candidate], router: LLMRouter,
                                 customer_profile: Optional[CustomerProfile] = None,
                                 tender_source: str = "file") -> ClassificationResult:
    return ShipmentClassifier(router).classify_and_verify(text, candidates, customer_profile, tender_source)
