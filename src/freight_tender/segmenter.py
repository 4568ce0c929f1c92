"""
Document segmentation into header / pickup / delivery zones
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .config import load_patterns, compile_patterns

logger = logging.getLogger(__name__)

MARKER_MERGE_DISTANCE = 20
BLOCK_LOOKBACK_WINDOW = 200


@dataclass
class Segment:
    """A contiguous zone of the document"""
    type: str
    start_index: int
    end_index: int
    text: str


@dataclass
class SegmentationResult:
    """Segments in document order plus the end of the header zone"""
    segments: List[Segment] = field(default_factory=list)
    header_end: int = 0

    def segment_at(self, position: int) -> Optional[Segment]:
        for segment in self.segments:
            if segment.start_index <= position < segment.end_index:
                return segment
        return None


class DocumentSegmenter:
    """Splits tender text into header and stop blocks"""

    def __init__(self, patterns: Optional[dict] = None):
        table = (patterns or load_patterns())["segmenter"]
        self.stop_triggers = compile_patterns(table["stop_triggers"])
        self.pickup_markers = compile_patterns(table["pickup_markers"])
        self.delivery_markers = compile_patterns(table["delivery_markers"])

    def find_header_end(self, text: str) -> int:
        """Offset of the earliest stops-section trigger, or len(text) if none"""
        header_end = len(text)
        for pattern in self.stop_triggers:
            match = pattern.search(text)
            if match and match.start() < header_end:
                header_end = match.start()
        return header_end

    def segment(self, text: str) -> SegmentationResult:
        """Segment the document into a header and pickup/delivery blocks"""
        header_end = self.find_header_end(text)
        result = SegmentationResult(header_end=header_end)

        if header_end > 0:
            result.segments.append(Segment("header", 0, header_end, text[:header_end]))

        markers = []
        for block_type, patterns in (("pickup", self.pickup_markers),
                                     ("delivery", self.delivery_markers)):
            for pattern in patterns:
                for match in pattern.finditer(text, header_end):
                    markers.append((match.start(), block_type))

        # stable: pickup markers win ties at the same offset
        markers.sort(key=lambda m: m[0])

        kept = []
        for index, block_type in markers:
            if not kept or index - kept[-1][0] > MARKER_MERGE_DISTANCE:
                kept.append((index, block_type))

        for i, (index, block_type) in enumerate(kept):
            end = kept[i + 1][0] if i + 1 < len(kept) else len(text)
            result.segments.append(Segment(block_type, index, end, text[index:end]))

        logger.debug(f"Segmented {len(text)} chars: header_end={header_end}, "
                     f"{len(result.segments)} segments")
        return result

    def block_type_at(self, text: str, position: int,
                      segmentation: Optional[SegmentationResult] = None,
                      window: int = BLOCK_LOOKBACK_WINDOW) -> str:
        """Block type at a position: containing segment, nearby cues, header, else unknown"""
        if segmentation is None:
            segmentation = self.segment(text)

        segment = segmentation.segment_at(position)
        if segment is not None:
            return segment.type

        lookback = text[max(0, position - window):position]
        if any(p.search(lookback) for p in self.pickup_markers):
            return "pickup"
        if any(p.search(lookback) for p in self.delivery_markers):
            return "delivery"
        if position < segmentation.header_end:
            return "header"
        return "unknown"


_default_segmenter: Optional[DocumentSegmenter] = None


def get_segmenter() -> DocumentSegmenter:
    global _default_segmenter
    if _default_segmenter is None:
        _default_segmenter = DocumentSegmenter()
    return _default_segmenter


def segment_document(text: str) -> SegmentationResult:
    return get_segmenter().segment(text)


def get_block_type_at_position(text: str, position: int, window: int = BLOCK_LOOKBACK_WINDOW) -> str:
    return get_segmenter().block_type_at(text, position, window=window)


def is_in_header(text: str, position: int) -> bool:
    return position < get_segmenter().find_header_end(text)


def is_in_stop_section(text: str, position: int) -> bool:
    return get_block_type_at_position(text, position) in ("pickup", "delivery")
