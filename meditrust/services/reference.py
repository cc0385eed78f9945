"""
Reference Medicine Database for MediTrust
=========================================
Immutable catalogue of known-authentic medicines and their expected
visual characteristics.

Features:
- FeatureProfile: canonical colour, shape, size class, text/QR presence,
  packaging quality class
- ReferenceDatabase: read-only, ordered by id, safe to share across requests
- Loaders for the built-in catalogue, a JSON file, or a registry URL
"""

import json
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import httpx

from meditrust.services.errors import ReferenceDatabaseError

logger = logging.getLogger(__name__)


# ============================================================
# Vocabulary
# ============================================================

# Canonical RGB for each colour name a profile may use
COLOR_PALETTE: Dict[str, Tuple[int, int, int]] = {
    "white": (240, 240, 236),
    "grey": (150, 150, 150),
    "black": (30, 30, 30),
    "yellow": (240, 215, 70),
    "orange": (235, 130, 40),
    "red": (200, 45, 45),
    "pink": (240, 160, 190),
    "purple": (140, 80, 165),
    "blue": (60, 110, 200),
    "green": (70, 160, 90),
    "brown": (130, 85, 50),
}

# Canonical longest/shortest side ratio of each shape class
SHAPE_ASPECT_RATIOS: Dict[str, float] = {
    "round": 1.0,
    "oval": 1.6,
    "oblong": 1.9,
    "capsule": 2.6,
}

# Ordered size scale; values are the canonical object extent as a fraction
# of the photo's longest side
SIZE_CLASSES: Tuple[str, ...] = ("small", "standard", "medium", "large")
SIZE_EXTENTS: Dict[str, float] = {
    "small": 0.30,
    "standard": 0.45,
    "medium": 0.60,
    "large": 0.75,
}

# Canonical print quality (0-100) of each packaging class
PACKAGING_QUALITY_LEVELS: Dict[str, float] = {
    "high": 90.0,
    "medium": 65.0,
    "low": 40.0,
}

# Text-region quality expected when a profile carries printed/embossed text
TEXT_PRESENT_QUALITY = 85.0


# ============================================================
# Data Models
# ============================================================

@dataclass(frozen=True)
class FeatureProfile:
    """Expected visual characteristics of an authentic medicine."""
    color: str
    shape: str
    size: str
    text_present: bool = True
    qr_code_present: bool = True
    packaging_quality: str = "high"

    def __post_init__(self):
        if self.color not in COLOR_PALETTE:
            raise ReferenceDatabaseError(f"Unknown colour: {self.color}")
        if self.shape not in SHAPE_ASPECT_RATIOS:
            raise ReferenceDatabaseError(f"Unknown shape: {self.shape}")
        if self.size not in SIZE_EXTENTS:
            raise ReferenceDatabaseError(f"Unknown size class: {self.size}")
        if self.packaging_quality not in PACKAGING_QUALITY_LEVELS:
            raise ReferenceDatabaseError(
                f"Unknown packaging quality: {self.packaging_quality}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "color": self.color,
            "shape": self.shape,
            "size": self.size,
            "textPresent": self.text_present,
            "qrCodePresent": self.qr_code_present,
            "packagingQuality": self.packaging_quality,
        }


@dataclass(frozen=True)
class ReferenceMedicine:
    """A known-authentic medicine."""
    id: str
    name: str
    manufacturer: str
    batch_number: str
    features: FeatureProfile
    certifications: Tuple[str, ...] = ()
    description: Mapping[str, str] = field(default_factory=dict)

    def summary(self) -> Dict[str, str]:
        """Identity fields shown alongside a verdict."""
        return {
            "name": self.name,
            "manufacturer": self.manufacturer,
            "batchNumber": self.batch_number,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "manufacturer": self.manufacturer,
            "batchNumber": self.batch_number,
            "features": self.features.to_dict(),
            "certifications": list(self.certifications),
            "description": dict(self.description),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReferenceMedicine":
        """
        Parses a catalogue record.

        Expected format:
        {
            "id": "med-001",
            "name": "...",
            "manufacturer": "...",
            "batchNumber": "...",
            "features": {
                "color": "white", "shape": "round", "size": "standard",
                "textPresent": true, "qrCodePresent": true,
                "packagingQuality": "high"
            },
            "certifications": ["..."],
            "description": {"color": "...", ...}   (optional)
        }
        """
        try:
            features = data["features"]
            profile = FeatureProfile(
                color=str(features["color"]).lower(),
                shape=str(features["shape"]).lower(),
                size=str(features["size"]).lower(),
                text_present=bool(features.get("textPresent", True)),
                qr_code_present=bool(features.get("qrCodePresent", True)),
                packaging_quality=str(features.get("packagingQuality", "high")).lower(),
            )
            return cls(
                id=str(data["id"]),
                name=str(data["name"]),
                manufacturer=str(data["manufacturer"]),
                batch_number=str(data["batchNumber"]),
                features=profile,
                certifications=tuple(data.get("certifications", ())),
                description=dict(data.get("description", {})),
            )
        except ReferenceDatabaseError:
            raise
        except (KeyError, TypeError, AttributeError) as e:
            raise ReferenceDatabaseError(f"Malformed reference record: {e}")


class ReferenceDatabase:
    """
    Read-only collection of ReferenceMedicine records, ordered by id.

    Instances are never mutated after construction, so one database can be
    shared by any number of concurrent analyses.
    """

    def __init__(self, medicines: Iterable[ReferenceMedicine]):
        ordered = tuple(sorted(medicines, key=lambda m: m.id))
        ids = [m.id for m in ordered]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ReferenceDatabaseError(f"Duplicate reference ids: {duplicates}")
        self._medicines: Tuple[ReferenceMedicine, ...] = ordered
        self._by_id: Mapping[str, ReferenceMedicine] = {m.id: m for m in ordered}

    def __iter__(self) -> Iterator[ReferenceMedicine]:
        return iter(self._medicines)

    def __len__(self) -> int:
        return len(self._medicines)

    def __contains__(self, medicine_id: object) -> bool:
        return medicine_id in self._by_id

    def get(self, medicine_id: str) -> Optional[ReferenceMedicine]:
        return self._by_id.get(medicine_id)

    def search(self, query: str) -> List[ReferenceMedicine]:
        """Case-insensitive match on name, manufacturer or batch number."""
        needle = (query or "").strip().lower()
        if not needle:
            return list(self._medicines)
        return [
            m for m in self._medicines
            if needle in m.name.lower()
            or needle in m.manufacturer.lower()
            or needle in m.batch_number.lower()
        ]

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "ReferenceDatabase":
        if not isinstance(records, (list, tuple)):
            raise ReferenceDatabaseError("Reference catalogue must be a list of records")
        return cls(ReferenceMedicine.from_dict(r) for r in records)


# ============================================================
# Built-in Catalogue
# ============================================================

DEFAULT_CATALOGUE: List[Dict[str, Any]] = [
    {
        "id": "med-001",
        "name": "Paracetamol 500mg",
        "manufacturer": "PharmaCorp Ltd.",
        "batchNumber": "PCM-2024-001",
        "features": {
            "color": "white", "shape": "round", "size": "standard",
            "textPresent": True, "qrCodePresent": True, "packagingQuality": "high",
        },
        "certifications": ["FDA Approved", "WHO Certified", "GMP Compliant"],
        "description": {
            "color": "White",
            "shape": "Round tablet",
            "size": "10mm diameter",
            "text": "P500 embossed on one side",
            "qrCode": "Present on strip",
            "packaging": "Silver blister pack, 10 tablets",
        },
    },
    {
        "id": "med-002",
        "name": "Ibuprofen 400mg",
        "manufacturer": "HealthMed Inc.",
        "batchNumber": "IBU-2024-045",
        "features": {
            "color": "orange", "shape": "oval", "size": "medium",
            "textPresent": True, "qrCodePresent": True, "packagingQuality": "high",
        },
        "certifications": ["FDA Approved", "EU CE Mark", "ISO Certified"],
        "description": {
            "color": "Orange-red",
            "shape": "Oval tablet",
            "size": "15mm x 8mm",
            "text": "IBU400 on one side",
            "qrCode": "Present on packaging",
            "packaging": "Red/white blister, 15 tablets",
        },
    },
    {
        "id": "med-003",
        "name": "Amoxicillin 250mg",
        "manufacturer": "BioPharm Solutions",
        "batchNumber": "AMX-2024-122",
        "features": {
            "color": "pink", "shape": "capsule", "size": "large",
            "textPresent": True, "qrCodePresent": True, "packagingQuality": "high",
        },
        "certifications": ["FDA Approved", "WHO Prequalified", "GMP Compliant"],
        "description": {
            "color": "Pink/White capsule",
            "shape": "Capsule",
            "size": "20mm length",
            "text": "AMX250 printed",
            "qrCode": "QR on bottle label",
            "packaging": "Sealed bottle, 21 capsules",
        },
    },
    {
        "id": "med-004",
        "name": "Aspirin 100mg",
        "manufacturer": "CardioHealth Pharma",
        "batchNumber": "ASP-2024-089",
        "features": {
            "color": "white", "shape": "round", "size": "small",
            "textPresent": True, "qrCodePresent": True, "packagingQuality": "high",
        },
        "certifications": ["FDA Approved", "USP Verified", "ISO 9001"],
        "description": {
            "color": "White",
            "shape": "Round, thin tablet",
            "size": "8mm diameter",
            "text": "ASP100 and logo",
            "qrCode": "On packaging",
            "packaging": "White blister, 30 tablets",
        },
    },
    {
        "id": "med-005",
        "name": "Omeprazole 20mg",
        "manufacturer": "GastroMed Corp.",
        "batchNumber": "OMP-2024-156",
        "features": {
            "color": "purple", "shape": "capsule", "size": "large",
            "textPresent": True, "qrCodePresent": True, "packagingQuality": "high",
        },
        "certifications": ["FDA Approved", "EMA Approved", "GMP Certified"],
        "description": {
            "color": "Pink/Purple capsule",
            "shape": "Delayed-release capsule",
            "size": "18mm length",
            "text": "OM20 on capsule",
            "qrCode": "On box and strip",
            "packaging": "Purple blister, 14 capsules",
        },
    },
    {
        "id": "med-006",
        "name": "Metformin 500mg",
        "manufacturer": "DiabetesCare Pharma",
        "batchNumber": "MET-2024-203",
        "features": {
            "color": "white", "shape": "oval", "size": "medium",
            "textPresent": True, "qrCodePresent": True, "packagingQuality": "high",
        },
        "certifications": ["FDA Approved", "WHO Listed", "ISO 13485"],
        "description": {
            "color": "White",
            "shape": "Oval tablet",
            "size": "15mm x 7mm",
            "text": "MET500 embossed",
            "qrCode": "Present on packaging",
            "packaging": "White blister, 60 tablets",
        },
    },
]


# ============================================================
# Loaders
# ============================================================

@lru_cache(maxsize=None)
def default_database() -> ReferenceDatabase:
    """The built-in reference catalogue, built once per process."""
    return ReferenceDatabase.from_records(DEFAULT_CATALOGUE)


def load_database_file(path: Union[str, Path]) -> ReferenceDatabase:
    """
    Loads a catalogue from a JSON file.

    The file holds either a list of records or {"medicines": [...]}.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ReferenceDatabaseError(f"Could not read reference catalogue {path}: {e}")

    if isinstance(data, dict):
        data = data.get("medicines", [])

    database = ReferenceDatabase.from_records(data)
    logger.info(f"Loaded {len(database)} reference medicines from {path}")
    return database


def fetch_database(url: str, timeout: float = 10.0) -> ReferenceDatabase:
    """
    Fetches a catalogue from a registry service.

    Args:
        url: Endpoint returning the catalogue as JSON
        timeout: Request timeout in seconds

    Returns:
        ReferenceDatabase built from the response
    """
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPError as e:
        raise ReferenceDatabaseError(f"Registry request failed: {e}")
    except ValueError as e:
        raise ReferenceDatabaseError(f"Registry returned invalid JSON: {e}")

    if isinstance(data, dict):
        data = data.get("medicines", [])

    database = ReferenceDatabase.from_records(data)
    logger.info(f"Fetched {len(database)} reference medicines from registry")
    return database


def load_reference_database(
    path: Optional[Union[str, Path]] = None,
    url: Optional[str] = None
) -> ReferenceDatabase:
    """
    Loads the reference database once at startup.

    Resolution order: explicit url, explicit path, MEDITRUST_REFERENCE_URL,
    MEDITRUST_REFERENCE_DB, then the built-in catalogue.
    """
    if url:
        return fetch_database(url)
    if path:
        return load_database_file(path)

    env_url = os.getenv("MEDITRUST_REFERENCE_URL")
    if env_url:
        return fetch_database(env_url)
    env_path = os.getenv("MEDITRUST_REFERENCE_DB")
    if env_path:
        return load_database_file(env_path)

    return default_database()
