"""
MediTrust Medicine Authentication API
=====================================
FastAPI front door for the medicine authentication pipeline.

Features:
- Photo analysis against the reference medicine database
- Reference database browsing and search
- Deterministic verdicts (identical photos give identical results)

Version: 1.0.0
"""

# Load environment variables FIRST before any other imports
# This ensures os.getenv() picks up .env values in all modules
import os
from pathlib import Path
from dotenv import load_dotenv

_env_file = Path(__file__).parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    # Also try project root
    _root_env = Path(__file__).parent.parent / ".env"
    if _root_env.exists():
        load_dotenv(_root_env)

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from meditrust.config import AnalysisConfig
from meditrust.services.analysis import AnalysisService
from meditrust.services.errors import (
    AnalysisFailedError, AnalysisTimeoutError, ExtractionError
)
from meditrust.services.reference import ReferenceDatabase, load_reference_database

API_VERSION = "1.0.0"

logging.basicConfig(
    level=os.getenv("MEDITRUST_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


# ============================================================
# Application Setup
# ============================================================

app = FastAPI(
    title="MediTrust Medicine Authentication",
    description="Counterfeit medicine detection from photos",
    version=API_VERSION
)

# Allow localhost:3000 (web), localhost:5173 (Vite dev server), and any CORS_ORIGINS env var
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service: Optional[AnalysisService] = None


def get_analysis_service() -> AnalysisService:
    """
    Returns the process-wide analysis service.

    The reference database is loaded once, on first use, and is read-only
    afterwards.
    """
    global _service
    if _service is None:
        database = load_reference_database()
        _service = AnalysisService(database=database, config=AnalysisConfig.from_env())
        logger.info(f"Analysis service ready with {len(database)} reference medicines")
    return _service


def get_reference_database(
    service: AnalysisService = Depends(get_analysis_service)
) -> ReferenceDatabase:
    return service.database


# ============================================================
# Pydantic Models
# ============================================================

class MedicineListResponse(BaseModel):
    """Response model for reference database listings."""
    medicines: List[Dict[str, Any]]
    total: int
    query: Optional[str] = None


class HealthResponse(BaseModel):
    """Response model for the health check."""
    status: str
    version: str
    reference_medicines: int


# ============================================================
# Analysis Routes
# ============================================================

@app.post("/analyze")
async def analyze_image(
    file: UploadFile = File(...),
    service: AnalysisService = Depends(get_analysis_service)
):
    """
    Analyzes a medicine photo.

    Pipeline:
    1. Decode and measure colour, shape, size, text, QR code and packaging
    2. Match the measurements against the reference database
    3. Report discrepancies for every mismatching feature
    4. Return the verdict, confidence and safety recommendations

    A low-confidence verdict is still a 200 response. Only a photo that
    cannot be analysed at all produces an error status.
    """
    image_bytes = await file.read()

    try:
        result = await service.analyze(image_bytes, file.content_type)
    except ExtractionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AnalysisTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except AnalysisFailedError as e:
        raise HTTPException(
            status_code=500,
            detail={"message": "Analysis failed", "stage": e.stage}
        )
    finally:
        await file.close()

    return result.to_dict()


# ============================================================
# Reference Database Routes
# ============================================================

@app.get("/medicines", response_model=MedicineListResponse)
async def list_medicines(
    q: Optional[str] = Query(None, max_length=100, description="Name, manufacturer or batch"),
    database: ReferenceDatabase = Depends(get_reference_database)
):
    """Lists or searches the reference medicine database."""
    medicines = database.search(q) if q else list(database)
    return MedicineListResponse(
        medicines=[m.to_dict() for m in medicines],
        total=len(medicines),
        query=q
    )


@app.get("/medicines/{medicine_id}")
async def get_medicine(
    medicine_id: str,
    database: ReferenceDatabase = Depends(get_reference_database)
):
    """Gets one reference medicine."""
    medicine = database.get(medicine_id)
    if medicine is None:
        raise HTTPException(status_code=404, detail="Medicine not found")
    return medicine.to_dict()


# ============================================================
# Health Check
# ============================================================

@app.get("/health", response_model=HealthResponse)
async def health_check(database: ReferenceDatabase = Depends(get_reference_database)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=API_VERSION,
        reference_medicines=len(database)
    )
