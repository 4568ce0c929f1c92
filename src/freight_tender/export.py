"""
Export of reviewed shipments to external TMS providers
"""
import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from .errors import ExportValidationError
from .retry import RETRY_PRESETS, retry
from .schema import StructuredShipment

logger = logging.getLogger(__name__)


class ExportPayload(BaseModel):
    """Provider-neutral payload built from a tender's final fields"""
    tender_id: str
    customer_id: Optional[str] = None
    customer_code: Optional[str] = None
    customer_name: Optional[str] = None
    shipment: StructuredShipment
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    extraction_run_id: Optional[str] = None
    original_file_name: Optional[str] = None
    source: str = Field("freight-tender", description="Originating system")


@dataclass
class DryRunResult:
    ok: bool
    validation_errors: List[ExportValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    mapped_payload: Optional[Dict[str, Any]] = None


@dataclass
class ExportResult:
    ok: bool
    provider_reference_id: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ProviderConfig:
    id: str
    name: str
    enabled: bool = True


class ExportProvider(ABC):
    config: ProviderConfig

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    def dry_run(self, payload: ExportPayload) -> DryRunResult:
        ...

    @abstractmethod
    def export(self, payload: ExportPayload) -> ExportResult:
        ...


STOP_TYPE_CODES = {"pickup": "PU", "delivery": "DL"}
REFERENCE_TYPE_CODES = {
    "po": "PO", "bol": "BOL", "pro": "PRO", "order": "ORDER",
    "pickup": "PU", "delivery": "DL", "appointment": "APPT", "confirmation": "CONF",
}


class McLeodProvider(ExportProvider):
    """McLeod TMS: validates and maps locally, posts when an endpoint is configured"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self.config = ProviderConfig(id="mcleod", name="McLeod TMS")
        self.base_url = base_url if base_url is not None else os.getenv("MCLEOD_API_BASE_URL")
        self.api_key = api_key if api_key is not None else os.getenv("MCLEOD_API_KEY")
        self.client = client
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    @staticmethod
    def validate(payload: ExportPayload):
        errors: List[ExportValidationError] = []
        warnings: List[str] = []
        shipment = payload.shipment

        if not payload.customer_code and not payload.customer_id:
            errors.append(ExportValidationError("customer", "Customer code or ID is required"))

        if not shipment.stops:
            errors.append(ExportValidationError("stops", "At least one stop is required"))
        else:
            if not any(s.type == "pickup" for s in shipment.stops):
                errors.append(ExportValidationError("stops", "At least one pickup stop is required"))
            if not any(s.type == "delivery" for s in shipment.stops):
                errors.append(ExportValidationError("stops", "At least one delivery stop is required"))
            for i, stop in enumerate(shipment.stops):
                if not stop.location.city:
                    errors.append(ExportValidationError(f"stops[{i}].location.city",
                                                        f"Stop {i + 1}: City is required"))
                if not stop.location.state:
                    errors.append(ExportValidationError(f"stops[{i}].location.state",
                                                        f"Stop {i + 1}: State is required"))
                if not stop.schedule.date and not stop.schedule.time:
                    warnings.append(f"Stop {i + 1}: No date or time specified")

        if not shipment.reference_numbers:
            warnings.append("No reference numbers provided")
        return errors, warnings

    @staticmethod
    def map_payload(payload: ExportPayload) -> Dict[str, Any]:
        shipment = payload.shipment
        cargo = shipment.cargo
        temperature = cargo.temperature

        stops = [{
            "sequence": i + 1,
            "type": STOP_TYPE_CODES.get(stop.type, "SO"),
            "company_name": stop.location.name or "",
            "address_line1": stop.location.address or "",
            "city": stop.location.city or "",
            "state": stop.location.state or "",
            "postal_code": stop.location.zip or "",
            "country": stop.location.country or "US",
            "appointment_date": stop.schedule.date,
            "appointment_start": stop.schedule.time,
            "references": [{"type": REFERENCE_TYPE_CODES.get(r.type, "REF"), "value": r.value}
                           for r in stop.reference_numbers],
        } for i, stop in enumerate(shipment.stops)]

        return {
            "customer_code": payload.customer_code or payload.customer_id or "",
            "load_type": "FTL",
            "stops": stops,
            "references": [{"type": REFERENCE_TYPE_CODES.get(r.type, "REF"), "value": r.value}
                           for r in shipment.reference_numbers],
            "cargo": [{
                "description": cargo.commodity or "Freight",
                "quantity": cargo.pieces.count or 0,
                "quantity_type": cargo.pieces.type or "pallets",
                "weight": cargo.weight.value,
                "weight_unit": cargo.weight.unit or "lbs",
                "temperature_min": temperature.value if temperature else None,
                "temperature_max": temperature.value if temperature else None,
                "temperature_unit": (temperature.unit if temperature else None) or "F",
            }],
            "special_instructions": "\n".join(shipment.unclassified_notes) or None,
            "external_reference": payload.tender_id,
        }

    def dry_run(self, payload: ExportPayload) -> DryRunResult:
        errors, warnings = self.validate(payload)
        mapped = self.map_payload(payload) if not errors else None
        return DryRunResult(ok=not errors, validation_errors=errors, warnings=warnings,
                            mapped_payload=mapped)

    def _post(self, mapped: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        url = f"{self.base_url.rstrip('/')}/api/shipments"
        if self.client is not None:
            response = self.client.post(url, json=mapped, headers=headers)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=mapped, headers=headers)
        response.raise_for_status()
        return response.json()

    def export(self, payload: ExportPayload) -> ExportResult:
        if not self.is_configured():
            return ExportResult(ok=False, error_code="NOT_CONFIGURED",
                                error_message="Set MCLEOD_API_BASE_URL and MCLEOD_API_KEY")

        result = self.dry_run(payload)
        if not result.ok:
            return ExportResult(ok=False, error_code="VALIDATION_FAILED",
                                error_message="Payload validation failed",
                                raw_response={"validation_errors": [e.to_dict() for e in result.validation_errors]})

        body = retry(lambda: self._post(result.mapped_payload), RETRY_PRESETS["quick"])
        reference = body.get("id") or body.get("shipment_id") or body.get("order_id")
        logger.info(f"✅ Exported tender {payload.tender_id} to McLeod as {reference}")
        return ExportResult(ok=True, provider_reference_id=str(reference) if reference else None,
                            raw_response=body)


class ExportRegistry:
    """Providers keyed by id"""

    def __init__(self, providers: Optional[List[ExportProvider]] = None):
        providers = providers if providers is not None else [McLeodProvider()]
        self.providers: Dict[str, ExportProvider] = {p.config.id: p for p in providers}

    def get(self, provider_id: str) -> Optional[ExportProvider]:
        return self.providers.get(provider_id)

    def available(self) -> List[ProviderConfig]:
        return [p.config for p in self.providers.values()]

    def dry_run(self, provider_id: str, payload: ExportPayload) -> DryRunResult:
        provider = self.get(provider_id)
        if provider is None:
            return DryRunResult(ok=False, validation_errors=[ExportValidationError(
                "provider", f"Export provider '{provider_id}' not found")])
        if not provider.config.enabled:
            return DryRunResult(ok=False, validation_errors=[ExportValidationError(
                "provider", f"Export provider '{provider_id}' is currently disabled")])
        return provider.dry_run(payload)

    def export(self, provider_id: str, payload: ExportPayload) -> ExportResult:
        provider = self.get(provider_id)
        if provider is None:
            return ExportResult(ok=False, error_code="PROVIDER_NOT_FOUND",
                                error_message=f"Export provider '{provider_id}' not found")
        if not provider.config.enabled:
            return ExportResult(ok=False, error_code="PROVIDER_DISABLED",
                                error_message=f"Export provider '{provider_id}' is currently disabled")
        if not provider.is_configured():
            return ExportResult(ok=False, error_code="PROVIDER_NOT_CONFIGURED",
                                error_message=f"Export provider '{provider_id}' is not properly configured")
        try:
            return provider.export(payload)
        except Exception as e:
            logger.error(f"❌ Export with provider {provider_id} failed: {e}")
            return ExportResult(ok=False, error_code="PROVIDER_ERROR", error_message=str(e))
