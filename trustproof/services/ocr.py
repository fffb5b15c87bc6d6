import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np
import pytesseract

from trustproof.errors import OcrFailure
from trustproof.schemas import RawOcrResult
from trustproof.utils.image import to_pil

logger = logging.getLogger(__name__)


class OcrEngine(Protocol):
    def recognize(self, image: np.ndarray) -> RawOcrResult: ...


def _word_confidence(value) -> Optional[float]:
    # pytesseract reports -1 for layout rows; older versions return strings
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return None
    return conf if conf >= 0 else None


def text_from_data(data: Dict[str, list]) -> Tuple[str, float]:
    """Rebuild line-structured text and mean word confidence from image_to_data output."""
    lines: Dict[Tuple[int, int, int], List[str]] = {}
    confs: List[float] = []
    for i, word in enumerate(data.get("text", [])):
        if not word or not word.strip():
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word.strip())
        conf = _word_confidence(data["conf"][i])
        if conf is not None:
            confs.append(conf)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = sum(confs) / len(confs) if confs else 0.0
    return text, max(0.0, min(100.0, confidence))


class TesseractEngine:
    def __init__(self, lang: str = "fra+eng", tesseract_cmd: Optional[str] = None, config: str = "--oem 3 --psm 6"):
        self.lang = lang
        self.config = config
        # Allow overriding tesseract path (Windows installs)
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def recognize(self, image: np.ndarray) -> RawOcrResult:
        try:
            data = pytesseract.image_to_data(
                to_pil(image), lang=self.lang, config=self.config, output_type=pytesseract.Output.DICT
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError) as e:
            raise OcrFailure(f"Text recognition failed: {e}") from e
        text, confidence = text_from_data(data)
        return RawOcrResult(text=text, confidence=confidence)


@dataclass(frozen=True)
class OcrOutcome:
    result: RawOcrResult
    slow_analysis: bool = False


async def recognize_with_advisory(
    engine: OcrEngine,
    image: np.ndarray,
    slow_threshold: float = 30.0,
    on_slow: Optional[Callable[[], None]] = None,
) -> OcrOutcome:
    """
    Run OCR off the event loop. Past ``slow_threshold`` seconds ``on_slow`` fires
    once so the caller can offer manual entry; recognition keeps running.
    """
    task = asyncio.ensure_future(asyncio.to_thread(engine.recognize, image))
    try:
        result = await asyncio.wait_for(asyncio.shield(task), timeout=slow_threshold)
        return OcrOutcome(result=result)
    except asyncio.TimeoutError:
        logger.info("OCR still running after %.0fs, sending slow-analysis advisory", slow_threshold)
        if on_slow is not None:
            on_slow()
    return OcrOutcome(result=await task, slow_analysis=True)
