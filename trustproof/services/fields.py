import asyncio
import logging
import re
from typing import Any, Dict, Mapping, Optional, Protocol

from trustproof.errors import ManualReviewRequired, ServiceUnavailable
from trustproof.result import Degraded, Ok, StageResult
from trustproof.schemas import DocumentAnalysisRequest, DocumentAnalysisResponse, ExtractedIdentityFields

logger = logging.getLogger(__name__)

SIMPLIFIED_ANALYSIS = "simplified analysis: document service unavailable, fields extracted locally"

DATE_PATTERN = re.compile(r"\d{2}[/\-]\d{2}[/\-]\d{4}")
# Priority order: CI card numbers, 9-digit numbers, letter + 8 digits
DOCUMENT_NUMBER_PATTERNS = [
    re.compile(r"[A-Z]{2}\d{7}"),
    re.compile(r"\d{9}"),
    re.compile(r"[A-Z]\d{8}"),
]
NAME_LINE = re.compile(r"^[A-ZÀ-Ü\s]{5,}$", re.IGNORECASE)

IDENTITY_FIELDS = (
    "full_name", "date_of_birth", "document_number", "expiry_date",
    "nationality", "gender", "place_of_birth",
)


class DocumentAnalyzer(Protocol):
    def analyze(self, request: DocumentAnalysisRequest) -> DocumentAnalysisResponse: ...


def _clamp(confidence: float) -> float:
    return max(0.0, min(100.0, float(confidence)))


def extract_with_rules(text: str, ocr_confidence: float) -> ExtractedIdentityFields:
    """Deterministic extraction used when the document service cannot be reached."""
    fields: Dict[str, Any] = {}

    dates = DATE_PATTERN.findall(text)
    if dates:
        fields["date_of_birth"] = dates[0]
        if len(dates) > 1:
            fields["expiry_date"] = dates[-1]

    for pattern in DOCUMENT_NUMBER_PATTERNS:
        m = pattern.search(text)
        if m:
            fields["document_number"] = m.group(0)
            break

    for line in text.splitlines():
        line = line.strip()
        if line and NAME_LINE.match(line) and len(line.split()) >= 2:
            fields["full_name"] = line
            break

    return ExtractedIdentityFields(extraction_confidence=_clamp(ocr_confidence), **fields)


def _raw_value(raw: Mapping[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    return value if isinstance(value, str) else None


def merge_service_response(resp: DocumentAnalysisResponse, ocr_confidence: float) -> ExtractedIdentityFields:
    """Top-level fields win over ``raw_fields``; confidence falls back to the OCR value."""
    raw = resp.raw_fields or {}

    if resp.extraction_confidence is not None:
        confidence = resp.extraction_confidence
    elif resp.overall_confidence is not None:
        confidence = resp.overall_confidence
    else:
        confidence = ocr_confidence

    return ExtractedIdentityFields(
        full_name=resp.full_name or _raw_value(raw, "full_name"),
        date_of_birth=resp.birth_date or _raw_value(raw, "birth_date"),
        document_number=resp.document_number or _raw_value(raw, "document_number"),
        expiry_date=resp.expiry_date or _raw_value(raw, "expiry_date"),
        nationality=resp.nationality or _raw_value(raw, "nationality"),
        gender=resp.gender or _raw_value(raw, "gender"),
        place_of_birth=_raw_value(raw, "place_of_birth"),
        extraction_confidence=_clamp(confidence),
        mrz_validated=bool(resp.mrz_validated),
        is_regional_scheme_a=bool(resp.is_uemoa or raw.get("is_uemoa")),
        is_regional_scheme_b=bool(resp.is_cedeao or raw.get("is_cedeao")),
    )


def requires_manual_review(fields: ExtractedIdentityFields, threshold: float = 70) -> bool:
    return fields.extraction_confidence < threshold


def confirm_fields(
    fields: ExtractedIdentityFields,
    corrections: Optional[Mapping[str, Optional[str]]] = None,
    acknowledge_review: bool = False,
    threshold: float = 70,
) -> ExtractedIdentityFields:
    """Apply user corrections and enforce the low-confidence review gate."""
    if requires_manual_review(fields, threshold) and not acknowledge_review:
        raise ManualReviewRequired(fields.extraction_confidence, threshold)

    updates = dict(corrections or {})
    unknown = set(updates) - set(IDENTITY_FIELDS)
    if unknown:
        raise ValueError(f"Unknown identity fields: {', '.join(sorted(unknown))}")
    # Round-trip through validation so blank corrections become None
    return ExtractedIdentityFields.model_validate({**fields.model_dump(), **updates})


class FieldExtractionEngine:
    def __init__(self, analyzer: Optional[DocumentAnalyzer]):
        self.analyzer = analyzer

    async def extract_fields(
        self, ocr_text: str, document_type: str, ocr_confidence: float
    ) -> StageResult[ExtractedIdentityFields]:
        if self.analyzer is None:
            return Degraded(extract_with_rules(ocr_text, ocr_confidence), SIMPLIFIED_ANALYSIS)

        request = DocumentAnalysisRequest(
            ocr_text=ocr_text, document_type=document_type, ocr_confidence=_clamp(ocr_confidence)
        )
        try:
            resp = await asyncio.to_thread(self.analyzer.analyze, request)
        except ServiceUnavailable as e:
            logger.warning("Document analysis failed, using regex fallback: %s", e)
            return Degraded(extract_with_rules(ocr_text, ocr_confidence), SIMPLIFIED_ANALYSIS)

        fields = merge_service_response(resp, ocr_confidence)
        if fields.mrz_validated:
            logger.info("MRZ checksums validated (ICAO 9303)")
        return Ok(fields)
