"""
Pydantic data models for tenders, candidates, shipments and customer rules
"""
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Literal, Union
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


CandidateType = Literal[
    "reference_number", "date", "time", "datetime", "address", "city_state_zip",
    "weight", "pieces", "dimensions", "temperature", "commodity", "stop_block",
]
ReferenceSubtype = Literal[
    "po", "bol", "order", "pickup", "delivery", "appointment",
    "reference", "confirmation", "pro", "unknown",
]
Confidence = Literal["high", "medium", "low"]
BlockType = Literal["header", "pickup", "delivery", "unknown"]
SourceType = Literal["document_text", "email_text", "rule", "user_edit", "llm_inference"]
WarningReason = Literal["unsupported_by_source", "weak_evidence", "ambiguous_match"]
TempMode = Literal["frozen", "refrigerated", "dry"]
TenderStatus = Literal[
    "draft", "extracted", "needs_review", "reviewed",
    "export_pending", "exported", "export_failed",
]
RuleType = Literal["label_map", "regex_map", "cargo_hint"]
RuleStatus = Literal["proposed", "active", "deprecated"]
LearnableFieldType = Literal[
    "reference_subtype", "cargo_commodity", "cargo_weight", "cargo_pieces",
    "cargo_temperature", "cargo_temp_mode", "stop_schedule", "stop_appointment",
]

REFERENCE_SUBTYPES = (
    "po", "bol", "order", "pickup", "delivery", "appointment",
    "reference", "confirmation", "pro", "unknown",
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------- candidates

class CandidatePosition(BaseModel):
    """Character offsets of a match in the source text"""
    model_config = ConfigDict(frozen=True)

    start: int = Field(..., description="Start offset (inclusive)")
    end: int = Field(..., description="End offset (exclusive)")


class Candidate(BaseModel):
    """A raw pattern match found in tender text"""
    model_config = ConfigDict(frozen=True)

    type: CandidateType = Field(..., description="Candidate type")
    value: str = Field(..., description="Normalized value")
    raw_match: str = Field(..., description="Matched substring")
    label_hint: Optional[str] = Field(None, description="Nearby label text")
    subtype: Optional[ReferenceSubtype] = Field(None, description="Reference number subtype")
    confidence: Confidence = Field(..., description="Heuristic confidence")
    position: CandidatePosition = Field(..., description="Offsets into the source text")
    context: str = Field("", description="Surrounding text window")


class RuleLogEntry(BaseModel):
    """One applied or skipped customer rule decision"""
    rule: str
    candidate: str
    reason: str


class ExtractionMetadata(BaseModel):
    """Metadata attached to an extraction"""
    extracted_at: str = Field(default_factory=utc_now)
    text_length: int = 0
    version: str = ""
    customer_id: Optional[str] = None
    applied_customer_rules: int = 0
    rules_applied_count: int = 0
    rules_skipped_count: int = 0
    rules_applied_details: List[RuleLogEntry] = Field(default_factory=list)
    rules_skipped_reasons: List[RuleLogEntry] = Field(default_factory=list)
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    page_count: Optional[int] = None
    word_count: Optional[int] = None
    reprocessed_at: Optional[str] = None
    reprocessed_with_customer: Optional[str] = None
    verification_warnings: List["VerificationWarning"] = Field(default_factory=list)
    normalization: Optional["NormalizationMetadata"] = None


class ExtractionResult(BaseModel):
    """Output of the candidate extractor"""
    candidates: List[Candidate] = Field(default_factory=list)
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)


# ---------------------------------------------------------------- shipment

class ReferenceNumber(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: ReferenceSubtype = Field(..., description="Reference subtype")
    value: str = Field(..., description="Reference value")
    applies_to: Optional[Literal["shipment", "pickup", "delivery", "stop"]] = None


class StopLocation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None


class StopSchedule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: Optional[str] = None
    time: Optional[str] = None
    appointment_required: Optional[bool] = None


class Stop(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["pickup", "delivery"]
    sequence: int = Field(..., description="1-based order within the shipment")
    location: StopLocation = Field(default_factory=StopLocation)
    schedule: StopSchedule = Field(default_factory=StopSchedule)
    reference_numbers: List[ReferenceNumber] = Field(default_factory=list)
    notes: Optional[str] = None


class Weight(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: Optional[float] = None
    unit: Optional[Literal["lbs", "kg"]] = None


class Pieces(BaseModel):
    model_config = ConfigDict(extra="forbid")

    count: Optional[int] = None
    type: Optional[str] = None


class Dimensions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    unit: Optional[Literal["in", "cm", "ft"]] = None


class Temperature(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: Optional[float] = None
    unit: Optional[Literal["F", "C"]] = None
    mode: Optional[TempMode] = None


class CargoDetails(BaseModel):
    model_config = ConfigDict(extra="forbid")

    weight: Weight = Field(default_factory=Weight)
    pieces: Pieces = Field(default_factory=Pieces)
    dimensions: Optional[Dimensions] = None
    commodity: Optional[str] = None
    temperature: Optional[Temperature] = None


class ClassificationMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str = ""
    classified_at: str = Field(default_factory=utc_now)
    confidence_notes: Optional[str] = None


class StructuredShipment(BaseModel):
    """Canonical structured shipment"""
    model_config = ConfigDict(extra="forbid")

    reference_numbers: List[ReferenceNumber] = Field(default_factory=list)
    stops: List[Stop] = Field(default_factory=list)
    cargo: CargoDetails = Field(default_factory=CargoDetails)
    unclassified_notes: List[str] = Field(default_factory=list)
    classification_metadata: ClassificationMetadata = Field(default_factory=ClassificationMetadata)


# ---------------------------------------------------------------- verification

class Evidence(BaseModel):
    match_text: str
    char_start: Optional[int] = None
    char_end: Optional[int] = None
    label: Optional[str] = None
    candidate_index: Optional[int] = None


class FieldProvenance(BaseModel):
    """Where a shipment field value came from"""
    source_type: SourceType
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence: List[Evidence] = Field(default_factory=list)
    reason: Optional[str] = None
    applied_at: Optional[str] = None


WARNING_CATEGORY = {
    "unsupported_by_source": "hallucinated",
    "weak_evidence": "unverified",
    "ambiguous_match": "unverified",
}


class VerificationWarning(BaseModel):
    """A field value that is not (or only weakly) supported by the source"""
    path: str
    value: str
    reason: WarningReason
    source_type: SourceType = "llm_inference"

    @computed_field
    @property
    def category(self) -> str:
        """hallucinated or unverified, derived from the reason"""
        return WARNING_CATEGORY[self.reason]


class NormalizationMetadata(BaseModel):
    refs_moved_to_stops: int = 0
    refs_deduplicated: int = 0
    stops_renumbered: int = 0
    cargo_source: Literal["header", "stop", "unknown"] = "unknown"


class LLMUsage(BaseModel):
    """Token usage and timing of one model call"""
    model: str
    provider: str = "openai"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    duration_ms: int = 0
    success: bool = True
    error: Optional[str] = None


class ClassificationResult(BaseModel):
    shipment: StructuredShipment
    warnings: List[VerificationWarning] = Field(default_factory=list)
    provenance: Dict[str, FieldProvenance] = Field(default_factory=dict)
    normalization: NormalizationMetadata = Field(default_factory=NormalizationMetadata)
    usage: LLMUsage


# ---------------------------------------------------------------- customers

class StopParsingHints(BaseModel):
    pickup_keywords: List[str] = Field(default_factory=list)
    delivery_keywords: List[str] = Field(default_factory=list)
    stop_delimiter: Optional[str] = None
    assume_single_pickup: Optional[bool] = None
    assume_single_delivery: Optional[bool] = None


class CommodityByTemp(BaseModel):
    frozen: Optional[str] = None
    refrigerated: Optional[str] = None
    dry: Optional[str] = None


class CargoHints(BaseModel):
    commodity_by_temp: CommodityByTemp = Field(default_factory=CommodityByTemp)
    default_commodity: Optional[str] = None
    default_temp_mode: Optional[TempMode] = None


class CustomerRule(BaseModel):
    """A learned per-customer rule with lifecycle status"""
    id: str
    customer_id: str
    rule_type: RuleType
    pattern: str = Field(..., description="Label text, regex or temperature category")
    target_value: str = Field(..., description="Subtype or commodity the pattern maps to")
    scope: Optional[Literal["header", "pickup", "delivery"]] = Field(
        None, description="Document block the rule was learned in; None applies everywhere")
    description: Optional[str] = None
    status: RuleStatus = "proposed"
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    deprecated_by: Optional[str] = None
    deprecated_at: Optional[str] = None
    learned_from_tender: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class CustomerProfile(BaseModel):
    """Customer with learned rules and parsing preferences"""
    id: str
    name: str
    code: Optional[str] = None
    stop_parsing_hints: StopParsingHints = Field(default_factory=StopParsingHints)
    cargo_hints: CargoHints = Field(default_factory=CargoHints)
    notes: Optional[str] = None
    rules: List[CustomerRule] = Field(default_factory=list)
    version: int = Field(0, description="Optimistic concurrency token for rule writes")
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class SuggestedRule(BaseModel):
    """Rule suggested from a user reclassification"""
    type: Literal["label", "regex"]
    label: Optional[str] = None
    pattern: Optional[str] = None
    subtype: ReferenceSubtype
    example_value: str
    context: str = ""
    scope: Optional[Literal["header", "pickup", "delivery"]] = None


class LearningEventContext(BaseModel):
    label_hint: Optional[str] = None
    nearby_text: Optional[str] = None
    temperature_value: Optional[float] = None
    temperature_mode: Optional[str] = None
    original_subtype: Optional[str] = None
    block_type: Optional[BlockType] = None


class LearningEvent(BaseModel):
    """A recorded user correction"""
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    tender_id: str
    field_type: LearnableFieldType
    field_path: str
    before_value: Optional[Union[bool, float, str]] = None
    after_value: Optional[Union[bool, float, str]] = None
    context: LearningEventContext = Field(default_factory=LearningEventContext)
    created_at: str = Field(default_factory=utc_now)


# ---------------------------------------------------------------- persistence

class Tender(BaseModel):
    id: str
    source_type: Literal["paste", "file"]
    original_text: str
    original_file_url: Optional[str] = None
    file_hash: Optional[str] = None
    customer_id: Optional[str] = None
    status: TenderStatus = "draft"
    batch_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    reviewed_at: Optional[str] = None


class ExtractionRun(BaseModel):
    """Append-only record of one pipeline run over a tender"""
    id: str
    tender_id: str
    candidates: List[Candidate] = Field(default_factory=list)
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)
    llm_output: Optional[StructuredShipment] = None
    provenance: Dict[str, FieldProvenance] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now)


class FinalFields(BaseModel):
    id: str
    tender_id: str
    shipment: StructuredShipment
    reviewed_by: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class BatchItem(BaseModel):
    id: str
    batch_id: str
    file_name: str
    order: int
    tender_id: Optional[str] = None
    state: Literal["pending", "needs_review", "reviewed", "failed", "skipped"] = "pending"
    error: Optional[str] = None
    deduped: bool = False


class Batch(BaseModel):
    id: str
    customer_id: Optional[str] = None
    created_by: Optional[str] = None
    items: List[BatchItem] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)


class UsageLog(BaseModel):
    id: str
    tender_id: Optional[str] = None
    customer_id: Optional[str] = None
    operation: Literal["classify", "reprocess"] = "classify"
    warnings_count: int = 0
    usage: LLMUsage
    created_at: str = Field(default_factory=utc_now)


# ---------------------------------------------------------------- config

class ProcessingConfig(BaseSettings):
    """Runtime settings; environment variables fill anything not passed explicitly"""
    llm_provider: Literal["openai", "ollama", "none"] = Field("openai", description="LLM provider")
    llm_model: str = Field("gpt-4o-mini", description="Model name")
    llm_temperature: float = Field(0.1, description="Sampling temperature")
    llm_timeout: float = Field(60.0, description="Model call timeout in seconds")
    openai_api_key: Optional[str] = Field(None, description="OpenAI API key")
    ollama_base_url: Optional[str] = Field(None, description="Ollama host")
    max_file_size_mb: float = Field(10, description="Upload size limit")
    max_pdf_pages: int = Field(20, description="PDF page limit")
    dedupe_window_days: int = Field(7, description="Duplicate detection window")
    batch_max_files: int = Field(10, description="Maximum files per batch")
    extraction_rate_limit: int = Field(
        10, description="Extractions per window",
        validation_alias=AliasChoices("extraction_rate_limit", "max_requests_per_minute"),
    )
    extraction_rate_window: int = Field(60, description="Extraction window in seconds")
    reprocess_rate_limit: int = Field(
        5, description="Reprocesses per window",
        validation_alias=AliasChoices("reprocess_rate_limit", "max_reprocess_per_hour"),
    )
    reprocess_rate_window: int = Field(3600, description="Reprocess window in seconds")
    lock_timeout_seconds: int = Field(
        300, description="Tender lock expiry",
        validation_alias=AliasChoices("lock_timeout_seconds", "tender_lock_timeout"),
    )
    signed_url_ttl: int = Field(3600, description="Signed URL lifetime in seconds")
    storage_secret: str = Field(
        "local-dev-secret", description="HMAC key for signed URLs",
        validation_alias=AliasChoices("storage_secret", "storage_signing_secret"),
    )

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_ignore_empty=True,
        populate_by_name=True,
        extra="ignore",
    )


ExtractionMetadata.model_rebuild()
