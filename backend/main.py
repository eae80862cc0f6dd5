"""
backend/main.py

Outbreak Forecast FastAPI server — localhost:8000
Run: uvicorn backend.main:app --reload

Endpoints:
  POST /api/predictions/generate         — rebuild the prediction set for the next N months
  GET  /api/predictions/generate/status  — state of the latest generation run
  GET  /api/predictions                  — current predictions, filtered + paginated
  GET  /api/predictions/statistics       — risk mix and per-disease summary
  POST /api/occurrences                  — upsert historical outbreak records
  GET  /health                           — liveness + stored occurrence count

Storage:
  One OutbreakStore per process, opened lazily at OUTBREAK_DB_PATH
  (":memory:" by default — set a file path to keep data across restarts).
  SEED_SAMPLE_DATA=1 fills an empty store with backend/sample_data.py.

CORS: allow_origins=["*"] is intentional for localhost dev — lock down if deployed.
"""

import logging
from typing import List, Optional, Union

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from backend.config import (
    DB_PATH,
    DEFAULT_HORIZON_MONTHS,
    LOG_LEVEL,
    MAX_HORIZON_MONTHS,
    SEED_SAMPLE_DATA,
)
from backend.forecast import (
    RISK_LEVELS,
    GenerationInProgressError,
    generation_status,
    regenerate_predictions,
)
from backend.storage import OutbreakStore, StorageError

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Store — module-level singleton, replaced in tests
# ---------------------------------------------------------------------------
_store: Optional[OutbreakStore] = None


def _get_store() -> OutbreakStore:
    global _store
    if _store is None:
        _store = OutbreakStore(DB_PATH)
        if SEED_SAMPLE_DATA and _store.count_occurrences() == 0:
            from backend.sample_data import generate_occurrences
            stored = _store.upsert_occurrences(generate_occurrences())
            logger.info("Seeded %d sample occurrence records", stored)
    return _store


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class GeneratePayload(BaseModel):
    months: int = Field(DEFAULT_HORIZON_MONTHS, ge=1, le=MAX_HORIZON_MONTHS)


class GenerateResponse(BaseModel):
    predictions_created: int
    generated_at: str
    horizon_months: int


class GenerationStatus(BaseModel):
    is_running: bool
    started_at: str | None
    finished_at: str | None
    horizon_months: int | None
    diseases_processed: int
    predictions_created: int
    error: str | None


class PredictionOut(BaseModel):
    id: int
    prediction_date: str             # YYYYMMDD
    disease_name: str
    predicted_livestock_count: int | None   # always null — not forecast
    confidence_score: float          # 0–100
    prediction_basis: dict | None    # method, factors, prediction_reason
    region: str | None               # always null — not modelled
    livestock_species: str | None
    risk_level: str                  # "LOW" | "MEDIUM" | "HIGH" | "CRITICAL"
    created_at: str | None


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class PredictionListResponse(BaseModel):
    list: List[PredictionOut]
    pagination: Pagination


class OccurrenceIn(BaseModel):
    occurrence_no: Union[int, str]
    disease_name: Optional[str] = None
    occurrence_date: Optional[str] = None          # YYYYMMDD; malformed values are ignored by the forecast
    livestock_count: Optional[int] = Field(None, ge=0)
    farm_name: Optional[str] = None
    farm_address: Optional[str] = None
    legal_dong_code: Optional[str] = None
    livestock_species_code: Optional[str] = None
    livestock_species: Optional[str] = None
    diagnosis_agency_code: Optional[str] = None
    diagnosis_agency: Optional[str] = None
    cessation_date: Optional[str] = None


class OccurrencePayload(BaseModel):
    records: List[OccurrenceIn]


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Outbreak Forecast API",
    description=(
        "Forward-looking livestock disease outbreak predictions from historical "
        "occurrence records: per disease, likely outbreak dates over the next N "
        "months with a 0–100 confidence score and a LOW/MEDIUM/HIGH/CRITICAL risk level."
    ),
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    try:
        occurrences = _get_store().count_occurrences()
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}")
    return {"status": "ok", "occurrences": occurrences}


@app.post("/api/predictions/generate", response_model=GenerateResponse)
def generate_predictions(payload: Optional[GeneratePayload] = None):
    """
    Regenerate the full prediction set for the next `months` months (default 3).

    Destructive: the previous set is replaced in one transaction. If reading
    history or writing fails the old set is kept and 503 is returned — retry the
    whole call. Only one run at a time; a concurrent call gets 409.
    """
    months = payload.months if payload is not None else DEFAULT_HORIZON_MONTHS
    try:
        return regenerate_predictions(_get_store(), months)
    except GenerationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Prediction generation failed: {e}")


@app.get("/api/predictions/generate/status", response_model=GenerationStatus)
def get_generation_status():
    return generation_status()


@app.get("/api/predictions", response_model=PredictionListResponse)
def list_predictions(
    disease_name: Optional[str] = None,
    prediction_date: Optional[str] = Query(None, description="YYYY, YYYYMM or YYYYMMDD prefix"),
    region: Optional[str] = None,
    risk_level: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=1000),
):
    """
    Current predictions, sorted by prediction_date ascending then risk level
    (CRITICAL first). disease_name and region match substrings, case-insensitively.
    """
    if risk_level and risk_level.upper() not in RISK_LEVELS:
        raise HTTPException(
            status_code=422,
            detail=f"risk_level must be one of {RISK_LEVELS}, got '{risk_level}'",
        )
    try:
        return _get_store().list_predictions(
            disease_name=disease_name,
            prediction_date=prediction_date,
            region=region,
            risk_level=risk_level,
            page=page,
            limit=limit,
        )
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}")


@app.get("/api/predictions/statistics")
def prediction_statistics():
    """
    Summary of the current prediction set:
    total, first/last prediction date, generation timestamp,
    counts per risk level and per-disease count / confidence / date range.
    """
    try:
        return _get_store().prediction_statistics()
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}")


@app.post("/api/occurrences")
def ingest_occurrences(payload: OccurrencePayload):
    """
    Upsert historical outbreak records keyed by occurrence_no.
    Predictions are not rebuilt automatically — call /api/predictions/generate.
    Returns: {status, rows, stored, total}
    """
    store = _get_store()
    try:
        stored = store.upsert_occurrences(r.model_dump() for r in payload.records)
        total  = store.count_occurrences()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}")
    return {"status": "ok", "rows": len(payload.records), "stored": stored, "total": total}
