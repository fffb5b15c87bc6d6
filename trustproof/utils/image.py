import io
from typing import Optional

import cv2
import numpy as np
from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError

from trustproof.errors import InvalidUpload

ACCEPTED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp", "image/bmp", "image/gif")


def validate_upload(content_type: Optional[str], size: int, max_bytes: int) -> None:
    if content_type not in ACCEPTED_CONTENT_TYPES:
        raise InvalidUpload("Unsupported format. Use JPEG, PNG or WebP.")
    if size > max_bytes:
        raise InvalidUpload(f"File too large. Maximum {max_bytes // (1024 * 1024)}MB.")


def decode_image(content: bytes) -> np.ndarray:
    arr = np.frombuffer(content, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        # Try PIL as fallback (webp/gif builds without codec support)
        try:
            pil = Image.open(io.BytesIO(content)).convert("RGB")
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidUpload(f"Could not decode image: {e}") from e
        img = cv2.cvtColor(np.array(pil), cv2.COLOR_RGB2BGR)
    return img


async def read_upload(upload: UploadFile, max_bytes: int) -> bytes:
    content = await upload.read()
    validate_upload(upload.content_type, len(content), max_bytes)
    return content


def to_pil(img_bgr: np.ndarray) -> Image.Image:
    if img_bgr.ndim == 2:
        return Image.fromarray(img_bgr)
    rgb = cv2.cvtColor(img_bgr, cv2.COLOR_BGR2RGB)
    return Image.fromarray(rgb)
