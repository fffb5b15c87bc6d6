import cv2
import numpy as np
import pytest

from fakes import FakeOcrEngine, encode_png
from trustproof.errors import OcrFailure


@pytest.fixture
def card_image() -> np.ndarray:
    """Light card on a dark background, large enough to be detected."""
    img = np.zeros((400, 600, 3), dtype=np.uint8)
    cv2.rectangle(img, (100, 80), (500, 320), (235, 235, 235), thickness=-1)
    cv2.putText(img, "KOUASSI", (140, 200), cv2.FONT_HERSHEY_SIMPLEX, 1.2, (20, 20, 20), 2)
    return img


@pytest.fixture
def png_bytes(card_image) -> bytes:
    return encode_png(card_image)


@pytest.fixture
def failing_engine() -> FakeOcrEngine:
    return FakeOcrEngine(error=OcrFailure("engine crashed"))
