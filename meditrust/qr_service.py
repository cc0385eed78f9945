"""
QR Code Service for MediTrust
=============================
Registry QR labels printed on authentic medicine packaging.

Features:
- Compact registry payload format ({"id", "batch", "mfr"} or URN form)
- QR label generation with high error correction
- OpenCV detection with adaptive-threshold and inverted fallbacks
- Payload resolution against the reference database
"""

import io
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

import cv2
import numpy as np
import qrcode
from PIL import Image

from meditrust.services.errors import QRPayloadError
from meditrust.services.reference import ReferenceDatabase, ReferenceMedicine

logger = logging.getLogger(__name__)

URN_PREFIX = "urn:meditrust:"


@dataclass
class QRConfig:
    """Configuration for QR label generation."""
    # Level H provides 30% error correction - labels on curved bottles and
    # crinkled blister foil are often partially unreadable
    error_correction: int = qrcode.constants.ERROR_CORRECT_H
    box_size: int = 6
    border: int = 4
    fill_color: str = "black"
    back_color: str = "white"


@dataclass(frozen=True)
class RegistryPayload:
    """Decoded registry payload from a medicine QR label."""
    medicine_id: str
    batch_number: Optional[str] = None
    manufacturer: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RegistryPayload":
        """
        Parses the compact JSON payload.

        Expected format:
        {"id": "med-001", "batch": "PCM-2024-001", "mfr": "PharmaCorp Ltd."}
        """
        medicine_id = data.get("id")
        if not medicine_id or not isinstance(medicine_id, str):
            raise QRPayloadError("Missing id in registry payload")
        return cls(
            medicine_id=medicine_id,
            batch_number=data.get("batch"),
            manufacturer=data.get("mfr"),
        )

    @classmethod
    def from_urn(cls, raw: str) -> "RegistryPayload":
        """
        Parses the URN payload form.

        Expected format: urn:meditrust:<medicine_id>[:<batch_number>]
        """
        parts = raw[len(URN_PREFIX):].split(":", 1)
        if not parts[0]:
            raise QRPayloadError("Missing id in registry URN")
        batch = parts[1] if len(parts) > 1 and parts[1] else None
        return cls(medicine_id=parts[0], batch_number=batch)

    @classmethod
    def parse(cls, raw: str) -> "RegistryPayload":
        """Auto-detects payload format and parses accordingly."""
        text = (raw or "").strip()
        if text.startswith(URN_PREFIX):
            return cls.from_urn(text)
        if text.startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise QRPayloadError(f"QR contains invalid JSON: {e}")
            if not isinstance(data, dict):
                raise QRPayloadError("QR JSON payload must be an object")
            return cls.from_json(data)
        raise QRPayloadError("Unrecognized QR payload format")


def registry_payload(medicine: ReferenceMedicine) -> Dict[str, str]:
    """Registry payload printed on an authentic medicine's label."""
    # Manufacturer is left out to keep labels small enough for blister strips
    return {
        "id": medicine.id,
        "batch": medicine.batch_number,
    }


def encode_payload(data: Dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"))  # Compact JSON


def generate_qr(
    data: Union[Dict[str, Any], str],
    config: Optional[QRConfig] = None
) -> Image.Image:
    """
    Generates a QR code image.

    Args:
        data: Dictionary (encoded as compact JSON) or raw string
        config: Optional QR configuration

    Returns:
        RGB PIL Image of the QR code
    """
    if config is None:
        config = QRConfig()

    payload = data if isinstance(data, str) else encode_payload(data)

    qr = qrcode.QRCode(
        version=None,
        error_correction=config.error_correction,
        box_size=config.box_size,
        border=config.border,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    img = qr.make_image(fill_color=config.fill_color, back_color=config.back_color)

    buffer = io.BytesIO()
    img.save(buffer)
    buffer.seek(0)
    return Image.open(buffer).convert("RGB")


def generate_registry_qr(
    medicine: ReferenceMedicine,
    config: Optional[QRConfig] = None
) -> Image.Image:
    """Renders the QR label for a reference medicine."""
    return generate_qr(registry_payload(medicine), config)


def decode_qr(gray: np.ndarray) -> Tuple[Optional[str], Optional[np.ndarray]]:
    """
    Detects and decodes a QR code in a greyscale image.

    Tries the raw image, then an adaptive-threshold version, then the
    inverted image.

    Args:
        gray: uint8 greyscale image

    Returns:
        Tuple of (decoded string, 4x2 corner points) or (None, None)
    """
    detector = cv2.QRCodeDetector()

    thresh = cv2.adaptiveThreshold(
        gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY, 11, 2
    )
    inverted = cv2.bitwise_not(gray)

    for candidate in (gray, thresh, inverted):
        data, points, _ = detector.detectAndDecode(candidate)
        if data:
            corners = None if points is None else np.asarray(points, dtype=np.float32).reshape(-1, 2)
            return data, corners

    return None, None


def resolve_payload(
    raw: Optional[str],
    database: ReferenceDatabase
) -> Optional[ReferenceMedicine]:
    """
    Resolves a decoded QR string to a registry entry.

    A payload resolves when its id is in the database and, if it carries a
    batch number, that batch matches the registered one.

    Returns:
        The matching ReferenceMedicine, or None
    """
    if not raw:
        return None

    try:
        payload = RegistryPayload.parse(raw)
    except QRPayloadError as e:
        logger.debug(f"Unresolvable QR payload: {e}")
        return None

    medicine = database.get(payload.medicine_id)
    if medicine is None:
        return None

    if payload.batch_number and payload.batch_number != medicine.batch_number:
        return None

    return medicine
