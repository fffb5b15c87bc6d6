import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# A detected quadrilateral smaller than this share of the frame is ignored
MIN_DOCUMENT_AREA_RATIO = 0.2


@dataclass
class PreprocessResult:
    image: np.ndarray
    applied_steps: List[str] = field(default_factory=list)
    document_detected: bool = False
    processing_time_ms: float = 0.0


def find_document_contour(img_bgr: np.ndarray) -> Optional[np.ndarray]:
    """Return the 4 corners of the largest quadrilateral in the frame, if any."""
    gray = cv2.cvtColor(img_bgr, cv2.COLOR_BGR2GRAY) if img_bgr.ndim == 3 else img_bgr
    blurred = cv2.GaussianBlur(gray, (5, 5), 0)
    edges = cv2.Canny(blurred, 75, 200)
    contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    h, w = gray.shape[:2]
    min_area = MIN_DOCUMENT_AREA_RATIO * h * w
    best, best_area = None, 0.0
    for contour in contours:
        area = cv2.contourArea(contour)
        if area <= best_area or area < min_area:
            continue
        peri = cv2.arcLength(contour, True)
        approx = cv2.approxPolyDP(contour, 0.02 * peri, True)
        if len(approx) == 4:
            best, best_area = approx.reshape(4, 2), area
    return best


def order_points(pts: np.ndarray) -> np.ndarray:
    """Order corners as top-left, top-right, bottom-right, bottom-left."""
    pts = pts.astype(np.float32)
    s = pts.sum(axis=1)
    d = np.diff(pts, axis=1).reshape(-1)  # y - x
    return np.array(
        [pts[np.argmin(s)], pts[np.argmin(d)], pts[np.argmax(s)], pts[np.argmax(d)]],
        dtype=np.float32,
    )


def correct_perspective(img: np.ndarray, corners: np.ndarray) -> np.ndarray:
    tl, tr, br, bl = rect = order_points(corners)
    width = int(max(np.linalg.norm(br - bl), np.linalg.norm(tr - tl)))
    height = int(max(np.linalg.norm(tr - br), np.linalg.norm(tl - bl)))
    if width < 2 or height < 2:
        raise ValueError("degenerate document contour")
    dst = np.array(
        [[0, 0], [width - 1, 0], [width - 1, height - 1], [0, height - 1]],
        dtype=np.float32,
    )
    matrix = cv2.getPerspectiveTransform(rect, dst)
    return cv2.warpPerspective(img, matrix, (width, height))


def enhance_contrast(img: np.ndarray) -> np.ndarray:
    gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY) if img.ndim == 3 else img
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    return clahe.apply(gray)


def reduce_noise(img: np.ndarray) -> np.ndarray:
    # Bilateral filter keeps character edges sharp
    return cv2.bilateralFilter(img, 9, 75, 75)


def preprocess(img_bgr: np.ndarray) -> PreprocessResult:
    """
    Best-effort enhancement before OCR: deskew, contrast, denoise.
    A failing step is skipped and the previous image kept; if nothing can be
    applied the original image comes back untouched with an empty step list.
    """
    start = time.perf_counter()
    result = PreprocessResult(image=img_bgr)
    current = img_bgr

    try:
        corners = find_document_contour(current)
        if corners is not None:
            result.applied_steps.append("document_detection")
            result.document_detected = True
            current = correct_perspective(current, corners)
            result.applied_steps.append("perspective_correction")
    except Exception:
        logger.warning("Perspective correction failed, keeping original framing", exc_info=True)

    for name, step in (("contrast_enhancement", enhance_contrast), ("noise_reduction", reduce_noise)):
        try:
            current = step(current)
            result.applied_steps.append(name)
        except Exception:
            logger.warning("Preprocessing step %s failed, skipped", name, exc_info=True)

    result.image = current
    result.processing_time_ms = (time.perf_counter() - start) * 1000
    logger.debug("Preprocessing applied: %s", ", ".join(result.applied_steps) or "none")
    return result
