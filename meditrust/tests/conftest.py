"""
Pytest Configuration and Fixtures for MediTrust Tests
=====================================================
Synthetic medicine photos are drawn with Pillow: a flat grey backdrop, one
tablet with dark printed markings, and optionally a registry QR label in the
bottom-right corner.
"""

import pytest
import io
import os
import sys
from typing import Optional

from PIL import Image, ImageDraw, ImageFilter

# Add project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from meditrust.config import AnalysisConfig
from meditrust.qr_service import QRConfig, generate_qr, generate_registry_qr
from meditrust.services.reference import COLOR_PALETTE, default_database

CANVAS = 800
BACKGROUND = (128, 128, 128)
INK = (40, 40, 40)
LABEL_ORIGIN = (560, 560)


def draw_medicine(
    shape: str = "round",
    color: str = "white",
    length: int = 360,
    breadth: int = 360,
    center=(200, 200),
    markings: bool = True,
    qr_medicine_id: Optional[str] = None,
    qr_text: Optional[str] = None,
    blur: float = 0.0,
    fmt: str = "PNG"
) -> bytes:
    """
    Renders a synthetic medicine photo.

    Args:
        shape: "round", "oval" or "capsule"
        color: Palette colour name of the tablet
        length, breadth: Outline extent in pixels (horizontal, vertical)
        center: Tablet centre
        markings: Draw dark imprint strokes on the tablet
        qr_medicine_id: Paste the registry QR label of this reference
        qr_text: Paste a QR label with this raw content instead
        blur: Gaussian blur radius applied to the whole photo
        fmt: Pillow save format
    """
    img = Image.new("RGB", (CANVAS, CANVAS), BACKGROUND)
    draw = ImageDraw.Draw(img)

    cx, cy = center
    box = (cx - length // 2, cy - breadth // 2, cx + length // 2, cy + breadth // 2)
    fill = COLOR_PALETTE[color]
    if shape == "capsule":
        draw.rounded_rectangle(box, radius=breadth // 2, fill=fill)
    else:
        draw.ellipse(box, fill=fill)

    if markings:
        # Six imprint strokes across the middle half of the tablet
        half = length // 4
        for i in range(6):
            y = cy - breadth // 4 + i * (breadth // 2) // 5
            draw.line((cx - half, y, cx + half, y), fill=INK, width=3)

    label = None
    if qr_medicine_id is not None:
        medicine = default_database().get(qr_medicine_id)
        label = generate_registry_qr(medicine, QRConfig(box_size=5))
    elif qr_text is not None:
        label = generate_qr(qr_text, QRConfig(box_size=5))
    if label is not None:
        img.paste(label, LABEL_ORIGIN)

    if blur:
        img = img.filter(ImageFilter.GaussianBlur(radius=blur))

    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def photo_factory():
    """Returns draw_medicine for tests that need custom photos."""
    return draw_medicine


@pytest.fixture
def reference_db():
    """The built-in reference catalogue."""
    return default_database()


@pytest.fixture
def analysis_config():
    """Default analysis configuration."""
    return AnalysisConfig()


@pytest.fixture
def paracetamol_photo():
    """Sharp photo of a white round standard tablet with the med-001 QR label."""
    return draw_medicine(qr_medicine_id="med-001")


@pytest.fixture
def ibuprofen_photo():
    """Orange oval medium tablet with the med-002 QR label."""
    return draw_medicine(
        shape="oval", color="orange", length=480, breadth=300,
        center=(300, 300), qr_medicine_id="med-002"
    )


@pytest.fixture
def amoxicillin_photo():
    """Pink large capsule with the med-003 QR label."""
    return draw_medicine(
        shape="capsule", color="pink", length=600, breadth=230,
        center=(400, 250), qr_medicine_id="med-003"
    )


@pytest.fixture
def unlabelled_photo():
    """White round tablet without any QR label."""
    return draw_medicine()


@pytest.fixture
def blurred_photo():
    """Heavily blurred copy of the paracetamol photo."""
    return draw_medicine(qr_medicine_id="med-001", blur=10)


@pytest.fixture
def blank_photo():
    """Featureless grey frame."""
    img = Image.new("RGB", (200, 200), BACKGROUND)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def tiny_photo():
    """Image below the minimum resolution."""
    img = Image.new("RGB", (32, 32), (255, 255, 255))
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


# Async test support
@pytest.fixture
def event_loop():
    """Create an event loop for async tests."""
    import asyncio
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


# Test markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that run the full image pipeline"
    )
