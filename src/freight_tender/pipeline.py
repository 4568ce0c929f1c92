"""
Request-level tender operations: create, reprocess, review, batch upload, rule admin and export
"""
import time
import logging
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from .auth import AuthContext, require_admin, require_auth
from .classifier import ShipmentClassifier
from .customer_rules import (
    apply_rule_action, apply_suggested_rule, create_proposed_rules_from_events, get_rules_grouped,
)
from .errors import (
    ClassificationError, FileParseError, InvalidStateTransitionError, NotFoundError,
    RequestValidationError, RetryError, TenderExtractError,
)
from .export import ExportPayload, ExportRegistry
from .extractor import CandidateExtractor, get_extractor
from .file_parser import get_file_type, get_page_count, parse_file
from .hashing import hash_bytes, hash_text, short_hash
from .idempotency import with_idempotency
from .learning import (
    apply_learned_cargo_defaults, detect_all_edits, detect_reclassifications, is_rule_already_learned,
)
from .llm_router import LLMRouter
from .locks import TenderLockManager
from .rate_limiter import RateLimitConfig, enforce_rate_limit
from .retry import RETRY_PRESETS, retry
from .schema import (
    Batch, BatchItem, ClassificationResult, CustomerProfile, ExtractionRun, ProcessingConfig,
    StructuredShipment, SuggestedRule, Tender, utc_now,
)
from .state_machine import POST_EXTRACTION_STATUS, TenderStateMachine
from .store import InMemoryStore, ObjectStorage, new_id
from .usage import log_usage

logger = logging.getLogger(__name__)

CREATE_ROUTE = "/api/tenders"
UPLOAD_ROUTE = "/api/tenders/upload"
BATCH_ROUTE = "/api/tenders/batch-upload"
REPROCESS_ROUTE = "/api/tenders/reprocess"


class TenderPipeline:
    """Wires extractor, classifier, learning and the rule store behind request-level operations"""

    def __init__(self, store: InMemoryStore, config: Optional[ProcessingConfig] = None,
                 router: Optional[LLMRouter] = None, storage: Optional[ObjectStorage] = None,
                 export_registry: Optional[ExportRegistry] = None,
                 extractor: Optional[CandidateExtractor] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.config = config or ProcessingConfig()
        self.classifier = ShipmentClassifier(router) if router is not None else None
        self.storage = storage or ObjectStorage(self.config.storage_secret)
        self.export_registry = export_registry or ExportRegistry()
        self.extractor = extractor or get_extractor()
        self.locks = TenderLockManager(store, self.config.lock_timeout_seconds)
        self.sleep = sleep

        self.extraction_limit = RateLimitConfig(self.config.extraction_rate_limit,
                                                self.config.extraction_rate_window)
        self.reprocess_limit = RateLimitConfig(self.config.reprocess_rate_limit,
                                               self.config.reprocess_rate_window)

    # ------------------------------------------------------------ helpers

    def _customer(self, customer_id: Optional[str]) -> Optional[CustomerProfile]:
        return self.store.get_customer(customer_id) if customer_id else None

    def _classify(self, tender: Tender, candidates, profile: Optional[CustomerProfile],
                  operation: str) -> Optional[ClassificationResult]:
        """Classification with retries; a failure is logged and tolerated"""
        if self.classifier is None:
            return None

        customer_id = profile.id if profile else None

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(f"🔄 Classification attempt {attempt} failed for tender {tender.id}, "
                           f"retrying in {delay:.2f}s: {error}")
            if isinstance(error, ClassificationError) and error.usage is not None:
                log_usage(self.store, error.usage, tender.id, customer_id, operation)

        try:
            result = retry(
                lambda: self.classifier.classify_and_verify(tender.original_text, candidates, profile,
                                                            tender.source_type),
                RETRY_PRESETS["openai"], sleep=self.sleep, on_retry=on_retry,
            )
        except (ClassificationError, RetryError) as e:
            error = e.last_error if isinstance(e, RetryError) else e
            usage = getattr(error, "usage", None)
            if usage is not None:
                log_usage(self.store, usage, tender.id, customer_id, operation)
            logger.warning(f"❌ Classification failed for tender {tender.id}, keeping candidates only: {e}")
            return None

        log_usage(self.store, result.usage, tender.id, customer_id, operation, len(result.warnings))
        return result

    def _run_pipeline(self, tender: Tender, profile: Optional[CustomerProfile],
                      operation: str = "classify", file_metadata: Optional[Dict[str, Any]] = None) -> ExtractionRun:
        extraction = self.extractor.extract(tender.original_text, profile)
        metadata = extraction.metadata
        for key, value in (file_metadata or {}).items():
            setattr(metadata, key, value)

        result = self._classify(tender, extraction.candidates, profile, operation)
        run = ExtractionRun(id=new_id(), tender_id=tender.id, candidates=extraction.candidates,
                            metadata=metadata)
        if result is not None:
            run.llm_output = result.shipment
            run.provenance = result.provenance
            metadata.verification_warnings = result.warnings
            metadata.normalization = result.normalization

        self.store.add_run(run)
        logger.info(f"✅ Extraction run {run.id} for tender {tender.id}: "
                    f"{len(run.candidates)} candidates, llm_output={'yes' if run.llm_output else 'no'}")
        return run

    @staticmethod
    def _move_to(tender: Tender, target: str) -> None:
        if tender.status == target:
            return
        machine = TenderStateMachine(tender.status)
        tender.status = machine.transition_to(target)

    def _new_tender(self, source_type: str, text: str, actor: AuthContext, customer_id: Optional[str],
                    file_hash: Optional[str] = None, batch_id: Optional[str] = None) -> Tender:
        tender = Tender(
            id=new_id(),
            source_type=source_type,
            original_text=text,
            file_hash=file_hash or hash_text(text),
            customer_id=customer_id,
            batch_id=batch_id,
            created_by=actor.user_id,
        )
        return self.store.save_tender(tender)

    # ------------------------------------------------------------ create

    def create_tender(self, source_type: str, original_text: str, actor: Optional[AuthContext],
                      customer_id: Optional[str] = None) -> Dict[str, Any]:
        """Create a tender from pasted text and run the full pipeline over it"""
        actor = require_auth(actor)
        if source_type not in ("paste", "file"):
            raise RequestValidationError(f"Invalid source_type: {source_type}")
        if not original_text or not original_text.strip():
            raise RequestValidationError("original_text is required")
        enforce_rate_limit(self.store, actor.user_id, CREATE_ROUTE, self.extraction_limit)

        profile = self._customer(customer_id)
        tender = self._new_tender(source_type, original_text, actor, customer_id)
        run = self._run_pipeline(tender, profile)
        self._move_to(tender, POST_EXTRACTION_STATUS)

        return {"id": tender.id, "candidates_count": len(run.candidates),
                "has_llm_output": run.llm_output is not None}

    # ------------------------------------------------------------ file upload

    def _ingest_file(self, filename: str, data: bytes, actor: AuthContext,
                     customer_id: Optional[str], profile: Optional[CustomerProfile],
                     batch_id: Optional[str] = None) -> Tuple[Tender, Optional[ExtractionRun], bool]:
        """(tender, run, deduped); a duplicate returns the existing tender and no run"""
        file_type = get_file_type(filename)
        if file_type is None:
            raise FileParseError(f"Unsupported file type: {filename}", filename)
        if file_type == "doc":
            raise FileParseError(".doc files are not supported. Please save as .docx and re-upload.", filename)
        max_bytes = self.config.max_file_size_mb * 1024 * 1024
        if len(data) > max_bytes:
            raise FileParseError(f"File exceeds {self.config.max_file_size_mb} MB limit", filename)

        file_hash = hash_bytes(data)
        duplicate = self.store.find_duplicate(customer_id, file_hash, self.config.dedupe_window_days)
        if duplicate is not None:
            logger.info(f"Duplicate upload {filename} ({short_hash(file_hash)}), reusing tender {duplicate.id}")
            return duplicate, None, True

        if file_type == "pdf":
            pages = get_page_count(data)
            if pages is not None and pages > self.config.max_pdf_pages:
                raise FileParseError(f"PDF has {pages} pages, limit is {self.config.max_pdf_pages}", filename)

        parsed = parse_file(data, filename)
        tender = self._new_tender("file", parsed.text, actor, customer_id, file_hash, batch_id)
        tender.original_file_url = self.storage.upload(f"{tender.id}/{filename}", data)

        run = self._run_pipeline(tender, profile, file_metadata={
            "file_name": filename,
            "file_type": parsed.file_type,
            "page_count": parsed.page_count,
            "word_count": parsed.word_count,
        })
        self._move_to(tender, POST_EXTRACTION_STATUS)
        return tender, run, False

    def upload_file(self, filename: str, data: bytes, actor: Optional[AuthContext],
                    customer_id: Optional[str] = None) -> Dict[str, Any]:
        actor = require_auth(actor)
        enforce_rate_limit(self.store, actor.user_id, UPLOAD_ROUTE, self.extraction_limit)
        profile = self._customer(customer_id)
        tender, run, deduped = self._ingest_file(filename, data, actor, customer_id, profile)
        return {
            "id": tender.id,
            "deduped": deduped,
            "candidates_count": len(run.candidates) if run else None,
            "has_llm_output": (run.llm_output is not None) if run else None,
        }

    def upload_batch(self, files: Sequence[Tuple[str, bytes]], actor: Optional[AuthContext],
                     customer_id: Optional[str] = None) -> Batch:
        """Process files one at a time, in order; a failing file never stops the others"""
        actor = require_auth(actor)
        if not files:
            raise RequestValidationError("No files provided")
        if len(files) > self.config.batch_max_files:
            raise RequestValidationError(f"Too many files: {len(files)} (max {self.config.batch_max_files})")
        enforce_rate_limit(self.store, actor.user_id, BATCH_ROUTE, self.extraction_limit)
        profile = self._customer(customer_id)

        batch = Batch(id=new_id(), customer_id=customer_id, created_by=actor.user_id)
        queue = deque()
        for order, (filename, data) in enumerate(files):
            item = BatchItem(id=new_id(), batch_id=batch.id, file_name=filename, order=order)
            batch.items.append(item)
            queue.append((item, data))
        self.store.save_batch(batch)

        # single worker: keeps duplicate detection and rule effects in upload order
        while queue:
            item, data = queue.popleft()
            try:
                tender, _, deduped = self._ingest_file(item.file_name, data, actor, customer_id,
                                                       profile, batch.id)
                item.tender_id = tender.id
                item.deduped = deduped
                item.state = "reviewed" if tender.status in ("reviewed", "exported") else "needs_review"
            except TenderExtractError as e:
                item.state = "failed"
                item.error = e.message
                logger.warning(f"❌ Batch item {item.file_name} failed: {e.message}")
            except Exception as e:
                item.state = "failed"
                item.error = "Internal error while processing file"
                logger.error(f"❌ Batch item {item.file_name} failed unexpectedly: {e}", exc_info=True)

        done = sum(1 for i in batch.items if i.state != "failed")
        logger.info(f"📊 Batch {batch.id}: {done}/{len(batch.items)} files processed")
        return self.store.save_batch(batch)

    # ------------------------------------------------------------ reprocess

    def reprocess_tender(self, tender_id: str, customer_id: Optional[str], actor: Optional[AuthContext],
                         idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """Re-run the pipeline with a customer profile; append-only, locked and idempotent"""
        actor = require_auth(actor)
        if not customer_id:
            raise RequestValidationError("customer_id is required")
        tender = self.store.get_tender(tender_id)

        def handler() -> Dict[str, Any]:
            # cached replays skip the rate limit
            enforce_rate_limit(self.store, actor.user_id, REPROCESS_ROUTE, self.reprocess_limit,
                               resource_id=tender_id)
            with self.locks.tender_lock(tender_id, actor.user_id, "reprocess"):
                profile = self.store.get_customer(customer_id)
                previous = self.store.latest_run(tender_id)
                file_metadata = {"reprocessed_at": utc_now(), "reprocessed_with_customer": customer_id}
                if previous is not None:
                    for key in ("file_name", "file_type", "page_count", "word_count"):
                        file_metadata[key] = getattr(previous.metadata, key)

                run = self._run_pipeline(tender, profile, "reprocess", file_metadata)
                tender.customer_id = customer_id
                self._move_to(tender, POST_EXTRACTION_STATUS)
                self.store.save_tender(tender)

                return {
                    "tender": tender.model_dump(),
                    "extraction": {
                        "candidates": [c.model_dump() for c in run.candidates],
                        "metadata": run.metadata.model_dump(),
                        "llm_output": run.llm_output.model_dump() if run.llm_output else None,
                    },
                    "customer": {"id": profile.id, "name": profile.name, "code": profile.code},
                }

        response, from_cache = with_idempotency(
            self.store, idempotency_key, actor.user_id, REPROCESS_ROUTE,
            {"tender_id": tender_id, "customer_id": customer_id}, handler)
        if from_cache:
            logger.info(f"Reprocess of tender {tender_id} replayed from idempotency cache")
        return response

    # ------------------------------------------------------------ review

    def save_final_fields(self, tender_id: str, shipment: Union[StructuredShipment, Dict[str, Any]],
                          actor: Optional[AuthContext], customer_id: Optional[str] = None,
                          apply_suggested_rules: Optional[List[Union[SuggestedRule, Dict[str, Any]]]] = None
                          ) -> Dict[str, Any]:
        """Persist the reviewed shipment and learn from the differences to the model output"""
        actor = require_auth(actor)
        tender = self.store.get_tender(tender_id)
        if tender.status != "reviewed" and not TenderStateMachine(tender.status).can_transition_to("reviewed"):
            raise InvalidStateTransitionError(tender.status, "reviewed")

        try:
            final = shipment if isinstance(shipment, StructuredShipment) \
                else StructuredShipment.model_validate(shipment)
            accepted = [s if isinstance(s, SuggestedRule) else SuggestedRule.model_validate(s)
                        for s in (apply_suggested_rules or [])]
        except ValidationError as e:
            raise RequestValidationError(f"Invalid request body: {e.error_count()} errors") from e

        customer_id = customer_id or tender.customer_id
        suggestions: List[SuggestedRule] = []

        if customer_id:
            profile = self.store.get_customer(customer_id)
            run = self.store.latest_run(tender_id)
            events = []
            if run is not None and run.llm_output is not None:
                suggestions = [
                    s for s in detect_reclassifications(run.llm_output, final, run.candidates,
                                                        tender.original_text)
                    if not is_rule_already_learned(s, profile.rules)
                ]
                events = detect_all_edits(run.llm_output, final, run.candidates, tender.original_text,
                                          customer_id, tender_id)
                create_proposed_rules_from_events(profile, events, actor.user_id)
                apply_learned_cargo_defaults(profile, events)

            for suggestion in accepted:
                apply_suggested_rule(profile, suggestion, tender_id, actor.user_id)

            if events or accepted:
                self.store.save_customer(profile)
            self.store.add_learning_events(events)

        record = self.store.upsert_final_fields(tender_id, final, actor.user_id)
        self._move_to(tender, "reviewed")
        tender.reviewed_at = utc_now()
        self.store.save_tender(tender)

        logger.info(f"✅ Saved final fields for tender {tender_id}, {len(suggestions)} suggested rules")
        return {"id": record.id, "suggested_rules": [s.model_dump() for s in suggestions]}

    # ------------------------------------------------------------ admin

    def admin_rule_action(self, customer_id: str, rule_id: str, action: str,
                          actor: Optional[AuthContext]) -> Dict[str, Any]:
        actor = require_admin(actor)
        profile = self.store.get_customer(customer_id)
        if not any(r.id == rule_id for r in profile.rules):
            raise NotFoundError("Rule", rule_id)
        try:
            ok = apply_rule_action(profile, rule_id, action, actor.user_id)
        except ValueError as e:
            raise RequestValidationError(str(e)) from e
        if not ok:
            status = next(r.status for r in profile.rules if r.id == rule_id)
            raise RequestValidationError(f"Cannot {action} a {status} rule")

        saved = self.store.save_customer(profile)
        grouped = get_rules_grouped(saved)
        return {
            "rules": [r.model_dump() for r in saved.rules],
            "counts": {status: len(rules) for status, rules in grouped.items()},
        }

    # ------------------------------------------------------------ export

    def export_tender(self, tender_id: str, provider_id: str, actor: Optional[AuthContext],
                      dry_run: bool = True) -> Dict[str, Any]:
        actor = require_auth(actor)
        tender = self.store.get_tender(tender_id)
        if tender.status not in ("reviewed", "export_failed"):
            raise RequestValidationError(f"Tender must be reviewed before export (status: {tender.status})")
        final = self.store.get_final_fields(tender_id)
        if final is None:
            raise RequestValidationError("Tender has no reviewed fields to export")

        profile = self._customer(tender.customer_id)
        latest = self.store.latest_run(tender_id)
        payload = ExportPayload(
            tender_id=tender_id,
            customer_id=tender.customer_id,
            customer_code=profile.code if profile else None,
            customer_name=profile.name if profile else None,
            shipment=final.shipment,
            reviewed_by=final.reviewed_by,
            reviewed_at=tender.reviewed_at,
            extraction_run_id=latest.id if latest else None,
            original_file_name=latest.metadata.file_name if latest else None,
        )

        check = self.export_registry.dry_run(provider_id, payload)
        response: Dict[str, Any] = {
            "ok": check.ok,
            "dry_run": True,
            "validation_errors": [e.to_dict() for e in check.validation_errors],
            "warnings": check.warnings,
            "mapped_payload": check.mapped_payload,
        }
        if dry_run or not check.ok:
            return response

        self._move_to(tender, "export_pending")
        self.store.save_tender(tender)
        result = self.export_registry.export(provider_id, payload)
        self._move_to(tender, "exported" if result.ok else "export_failed")
        self.store.save_tender(tender)

        if not result.ok:
            logger.warning(f"❌ Export of tender {tender_id} failed: {result.error_code} {result.error_message}")
        response.update(
            dry_run=False,
            ok=result.ok,
            provider_reference_id=result.provider_reference_id,
            error_code=result.error_code,
            error_message=result.error_message,
            status=tender.status,
        )
        return response

    def get_file_url(self, tender_id: str, actor: Optional[AuthContext]) -> str:
        require_auth(actor)
        tender = self.store.get_tender(tender_id)
        if not tender.original_file_url:
            raise NotFoundError("File", tender_id)
        return self.storage.create_signed_url(tender.original_file_url, self.config.signed_url_ttl)
