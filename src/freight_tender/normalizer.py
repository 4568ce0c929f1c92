"""
Shipment normalization: reference scoping, deduplication and cargo source
"""
import re
import logging
from typing import List, Optional, Sequence, Tuple

from .config import load_patterns, compile_patterns
from .schema import Candidate, NormalizationMetadata, ReferenceNumber, StructuredShipment, Stop
from .segmenter import DocumentSegmenter, get_segmenter

logger = logging.getLogger(__name__)

STOP_LEVEL_SUBTYPES = ("pickup", "delivery", "appointment", "confirmation")
GLOBAL_SUBTYPES = ("bol", "order", "pro")

CONTEXT_BEFORE = 200
CONTEXT_AFTER = 100


def strip_leading_zeros(value: str) -> str:
    return value.lstrip("0") or value


def format_number(value: float) -> str:
    """22176.0 -> '22176', 12.5 -> '12.5'"""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _first_stop(stops: List[Stop], stop_type: str) -> Optional[int]:
    for index, stop in enumerate(stops):
        if stop.type == stop_type:
            return index
    return None


class ShipmentNormalizer:
    """Moves misplaced references to their stops, removes duplicates, and traces the cargo source"""

    def __init__(self, patterns: Optional[dict] = None, segmenter: Optional[DocumentSegmenter] = None):
        table = (patterns or load_patterns())["normalizer"]
        self.segmenter = segmenter or (DocumentSegmenter(patterns) if patterns else get_segmenter())
        self.pickup_keywords = compile_patterns(table["pickup_keywords"])
        self.delivery_keywords = compile_patterns(table["delivery_keywords"])
        self.header_keywords = compile_patterns(table["header_keywords"])
        self.cargo_header_patterns = compile_patterns(table["cargo_header_patterns"])

    # ------------------------------------------------------------ references

    @staticmethod
    def find_ref_position(value: str, text: str, candidates: Sequence[Candidate]) -> Optional[int]:
        stripped = strip_leading_zeros(value)
        for candidate in candidates:
            if candidate.type != "reference_number":
                continue
            if candidate.value == value or strip_leading_zeros(candidate.value) == stripped:
                return candidate.position.start

        index = text.find(value)
        if index == -1 and stripped != value:
            index = text.find(stripped)
        return index if index >= 0 else None

    def determine_stop_context(self, position: Optional[int], text: str,
                               stops: List[Stop]) -> Tuple[str, Optional[int]]:
        """(context, stop index) for a text position"""
        if position is None:
            return "unknown", None

        segment = self.segmenter.segment(text).segment_at(position)
        if segment is not None and segment.type in ("pickup", "delivery"):
            return segment.type, _first_stop(stops, segment.type)

        window = text[max(0, position - CONTEXT_BEFORE):min(len(text), position + CONTEXT_AFTER)]
        has_pickup = any(p.search(window) for p in self.pickup_keywords)
        has_delivery = any(p.search(window) for p in self.delivery_keywords)
        has_header = any(p.search(window) for p in self.header_keywords)

        if has_header and not has_pickup and not has_delivery:
            return "header", None
        if has_pickup:
            return "pickup", _first_stop(stops, "pickup")
        if has_delivery:
            return "delivery", _first_stop(stops, "delivery")
        return "unknown", None

    @staticmethod
    def should_be_stop_level(ref: ReferenceNumber, context: str) -> bool:
        if ref.type in GLOBAL_SUBTYPES:
            return False
        if context == "header":
            return False
        if ref.type in STOP_LEVEL_SUBTYPES:
            return True
        if ref.type == "po" and context == "pickup":
            return True
        return context in ("pickup", "delivery")

    @staticmethod
    def target_stop_index(ref: ReferenceNumber, context: str, stop_index: Optional[int],
                          stops: List[Stop]) -> Optional[int]:
        if ref.type == "pickup":
            return _first_stop(stops, "pickup")
        if ref.type in ("delivery", "confirmation", "appointment"):
            return _first_stop(stops, "delivery")
        if ref.type == "po" and context == "pickup":
            return _first_stop(stops, "pickup")
        if stop_index is not None:
            return stop_index
        if context in ("pickup", "delivery"):
            return _first_stop(stops, context)
        return None

    # ------------------------------------------------------------ cargo

    def _cargo_positions(self, shipment: StructuredShipment, text: str,
                         candidates: Sequence[Candidate]) -> List[int]:
        cargo = shipment.cargo
        numbers = []
        if cargo.weight.value is not None:
            numbers.append(("weight", cargo.weight.value))
        if cargo.pieces.count is not None:
            numbers.append(("pieces", cargo.pieces.count))
        if cargo.temperature is not None and cargo.temperature.value is not None:
            numbers.append(("temperature", cargo.temperature.value))

        positions = []
        for cargo_type, number in numbers:
            found = None
            for candidate in candidates:
                if candidate.type != cargo_type:
                    continue
                match = re.search(r"-?\d+(?:\.\d+)?", candidate.value.replace(",", ""))
                if match and float(match.group(0)) == float(number):
                    found = candidate.position.start
                    break
            if found is None:
                literals = [format_number(number)]
                if float(number).is_integer() and abs(number) >= 1000:
                    literals.append(f"{int(number):,}")
                for literal in literals:
                    match = re.search(r"(?<![\d.])" + re.escape(literal) + r"(?![\d])", text)
                    if match:
                        found = match.start()
                        break
            if found is not None:
                positions.append(found)

        if cargo.commodity:
            index = text.lower().find(cargo.commodity.lower())
            if index >= 0:
                positions.append(index)
        return positions

    def determine_cargo_source(self, shipment: StructuredShipment, text: str,
                               candidates: Sequence[Candidate]) -> str:
        """header / stop / unknown depending on where the cargo values trace to"""
        positions = self._cargo_positions(shipment, text, candidates)
        if positions:
            segmentation = self.segmenter.segment(text)
            zones = set()
            for position in positions:
                segment = segmentation.segment_at(position)
                if segment is not None:
                    zones.add(segment.type)
            if "header" in zones:
                return "header"
            if zones & {"pickup", "delivery"}:
                return "stop"

        if any(p.search(text) for p in self.cargo_header_patterns):
            return "header"
        return "unknown"

    # ------------------------------------------------------------ entry point

    def normalize(self, shipment: StructuredShipment, text: str,
                  candidates: Sequence[Candidate]) -> Tuple[StructuredShipment, NormalizationMetadata]:
        """Return a normalized copy of the shipment plus counters"""
        normalized = shipment.model_copy(deep=True)
        moved = 0
        deduplicated = 0

        for stop in normalized.stops:
            unique = []
            seen = set()
            for ref in stop.reference_numbers:
                key = (ref.type, ref.value)
                if key in seen:
                    deduplicated += 1
                    continue
                seen.add(key)
                unique.append(ref)
            stop.reference_numbers = unique

        keep_global: List[ReferenceNumber] = []
        for ref in normalized.reference_numbers:
            position = self.find_ref_position(ref.value, text, candidates)
            context, stop_index = self.determine_stop_context(position, text, normalized.stops)

            if not self.should_be_stop_level(ref, context):
                keep_global.append(ref)
                continue

            target = self.target_stop_index(ref, context, stop_index, normalized.stops)
            if target is None:
                keep_global.append(ref)
                continue

            stop = normalized.stops[target]
            if any(r.type == ref.type and r.value == ref.value for r in stop.reference_numbers):
                deduplicated += 1
            else:
                stop.reference_numbers.append(ref.model_copy())
                moved += 1

        stop_keys = {(r.type, r.value) for stop in normalized.stops for r in stop.reference_numbers}
        final_global: List[ReferenceNumber] = []
        seen_global = set()
        for ref in keep_global:
            key = (ref.type, ref.value)
            if key in stop_keys or key in seen_global:
                deduplicated += 1
                continue
            seen_global.add(key)
            final_global.append(ref)
        normalized.reference_numbers = final_global

        # sequence follows list order: 1..n
        renumbered = 0
        for index, stop in enumerate(normalized.stops, start=1):
            if stop.sequence != index:
                stop.sequence = index
                renumbered += 1

        metadata = NormalizationMetadata(
            refs_moved_to_stops=moved,
            refs_deduplicated=deduplicated,
            stops_renumbered=renumbered,
            cargo_source=self.determine_cargo_source(normalized, text, candidates),
        )
        logger.info(f"🔄 Normalization: moved {moved} refs to stops, deduplicated {deduplicated}, "
                    f"renumbered {renumbered} stops, cargo source {metadata.cargo_source}")
        return normalized, metadata


def needs_normalization(shipment: StructuredShipment) -> bool:
    """True if shipment-level references look like they belong to stops"""
    for ref in shipment.reference_numbers:
        if ref.type in STOP_LEVEL_SUBTYPES:
            return True
        if ref.applies_to in ("pickup", "delivery", "stop"):
            return True
    return False


_default_normalizer: Optional[ShipmentNormalizer] = None


def normalize_shipment(shipment: StructuredShipment, text: str,
                       candidates: Sequence[Candidate]) -> Tuple[StructuredShipment, NormalizationMetadata]:
    global _default_normalizer
    if _default_normalizer is None:
        _default_normalizer = ShipmentNormalizer()
    return _default_normalizer.normalize(shipment, text, candidates)
