"""
freight-tender: candidate extraction, LLM classification and learned customer rules for freight tenders
"""

__version__ = "0.1.0"
__author__ = "Freight Tender Team"

from .schema import (
    Candidate,
    ExtractionResult,
    StructuredShipment,
    CustomerProfile,
    CustomerRule,
    ProcessingConfig
)

from .segmenter import DocumentSegmenter
from .extractor import CandidateExtractor, extract_candidates
from .classifier import ShipmentClassifier
from .normalizer import ShipmentNormalizer
from .verifier import ShipmentVerifier
from .learning import LearningDetector
from .llm_router import LLMRouter
from .pipeline import TenderPipeline

__all__ = [
    "Candidate",
    "ExtractionResult",
    "StructuredShipment",
    "CustomerProfile",
    "CustomerRule",
    "ProcessingConfig",
    "DocumentSegmenter",
    "CandidateExtractor",
    "extract_candidates",
    "ShipmentClassifier",
    "ShipmentNormalizer",
    "ShipmentVerifier",
    "LearningDetector",
    "LLMRouter",
    "TenderPipeline"
]
