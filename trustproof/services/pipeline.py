import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from trustproof.result import Degraded, Err, Ok
from trustproof.schemas import ExtractedIdentityFields, RawOcrResult
from trustproof.services.fields import FieldExtractionEngine
from trustproof.services.ocr import OcrEngine, recognize_with_advisory
from trustproof.services.preprocess import preprocess
from trustproof.utils.image import decode_image

logger = logging.getLogger(__name__)

NO_TEXT = "no text recognized on the document"


@dataclass
class PipelineOutcome:
    fields: ExtractedIdentityFields
    ocr: RawOcrResult
    degraded: bool = False
    degraded_reason: Optional[str] = None
    slow_analysis: bool = False
    applied_steps: List[str] = field(default_factory=list)


class DocumentPipeline:
    """
    preprocess -> OCR -> field extraction, strictly in that order for one document.
    Only an OCR failure propagates (``OcrFailure``); every other stage degrades.
    """

    def __init__(self, engine: OcrEngine, extractor: FieldExtractionEngine, slow_threshold: float = 30.0):
        self.engine = engine
        self.extractor = extractor
        self.slow_threshold = slow_threshold

    async def run(self, content: bytes, document_type: str,
                  on_slow: Optional[Callable[[], None]] = None) -> PipelineOutcome:
        image = decode_image(content)

        prepared = await asyncio.to_thread(preprocess, image)
        ocr = await recognize_with_advisory(self.engine, prepared.image, self.slow_threshold, on_slow)
        logger.info(
            "OCR done: confidence=%.1f steps=%s slow=%s",
            ocr.result.confidence, ",".join(prepared.applied_steps) or "-", ocr.slow_analysis,
        )

        if ocr.result.text.strip():
            extraction = await self.extractor.extract_fields(ocr.result.text, document_type, ocr.result.confidence)
        else:
            extraction = Err(NO_TEXT)

        if isinstance(extraction, Ok):
            fields, reason = extraction.value, None
        elif isinstance(extraction, Degraded):
            fields, reason = extraction.value, extraction.reason
        else:
            fields = ExtractedIdentityFields(extraction_confidence=ocr.result.confidence)
            reason = extraction.reason

        return PipelineOutcome(
            fields=fields,
            ocr=ocr.result,
            degraded=extraction.degraded,
            degraded_reason=reason,
            slow_analysis=ocr.slow_analysis,
            applied_steps=prepared.applied_steps,
        )
