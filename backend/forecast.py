"""
backend/forecast.py

Outbreak forecast engine: turns grouped historical occurrences into dated,
scored, risk-classified predictions for the next N months.

Per disease:
    storage.overall_statistics()   all-time totals (rows with a livestock count)
    storage.monthly_statistics()   month-of-year aggregates, years merged
        → iter_horizon_months()    (year, month) from this month to today + N months
        → score_confidence()       frequency 40 + data volume 30 + consistency 30
        → classify_risk()          LOW | MEDIUM | HIGH | CRITICAL from monthly frequency
        → storage.day_pattern()    top-5 historical days of that month
        → predict_month()          one Prediction per valid (year, month, day)

Months with no history get a single low-confidence prediction on the 15th.

This is a frequency heuristic, not a statistical model: no regression, no
fitting, no backtesting. Output is a pure function of the stored history, the
horizon and the reference date.

Scoring functions and predict_month() are pure and testable without a database.
ForecastGenerator fans diseases out over a thread pool; regenerate_predictions()
adds the single-run guard and the atomic replace.
"""

import calendar
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from typing import Iterator, List, Optional, Tuple

import pandas as pd

from backend.config import DAY_PATTERN_LIMIT, DEFAULT_HORIZON_MONTHS, FORECAST_WORKERS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RISK_LEVELS = ["LOW", "MEDIUM", "HIGH", "CRITICAL"]

# (minimum monthly frequency, level) — checked top-down
RISK_THRESHOLDS = [(20, "CRITICAL"), (10, "HIGH"), (5, "MEDIUM")]

FREQUENCY_CAP   = 40
VOLUME_CAP      = 30
CONSISTENCY_CAP = 30
MAX_CONFIDENCE  = FREQUENCY_CAP + VOLUME_CAP + CONSISTENCY_CAP   # 100

FREQUENCY_SATURATION = 10    # monthly occurrences that earn the full frequency factor
VOLUME_SATURATION    = 200   # all-time occurrences that earn the full volume factor
FLAT_CONSISTENCY     = 15    # used when variability cannot be measured
CV_PENALTY           = 15    # consistency points lost per unit coefficient of variation

FALLBACK_DAY            = 15
FALLBACK_PENALTY        = 20
FALLBACK_FLOOR          = 30
LOW_CONFIDENCE_CAP      = 30
LOW_CONFIDENCE_SCALE    = 500   # all-time occurrences that reach LOW_CONFIDENCE_CAP
MONTHS_PER_YEAR         = 12

METHOD_DAY_PATTERN      = "historical_day_pattern"
METHOD_MID_MONTH        = "mid_month_fallback"
METHOD_LOW_CONFIDENCE   = "low_confidence_prediction"


class GenerationInProgressError(RuntimeError):
    """Raised when a second generation run starts while one is still replacing predictions."""


# ---------------------------------------------------------------------------
# Derived statistics
# ---------------------------------------------------------------------------

def _num(value) -> Optional[float]:
    """NaN/None-safe float conversion for aggregate columns."""
    if value is None or pd.isna(value):
        return None
    return float(value)


@dataclass(frozen=True)
class OverallStatistic:
    total_occurrences: int = 0
    overall_avg: Optional[float] = None
    overall_std_dev: Optional[float] = None
    min_count: Optional[float] = None
    max_count: Optional[float] = None
    first_occurrence_date: Optional[str] = None
    last_occurrence_date: Optional[str] = None

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "OverallStatistic":
        if df is None or df.empty:
            return cls()
        row = df.iloc[0]
        total = int(row["total_occurrences"]) if _num(row["total_occurrences"]) is not None else 0
        return cls(
            total_occurrences=total,
            overall_avg=_num(row["overall_avg"]),
            overall_std_dev=_num(row["overall_std_dev"]),
            min_count=_num(row["min_count"]),
            max_count=_num(row["max_count"]),
            first_occurrence_date=row["first_occurrence_date"] if total else None,
            last_occurrence_date=row["last_occurrence_date"] if total else None,
        )


@dataclass(frozen=True)
class MonthlyStatistic:
    month: int
    occurrence_count: int
    avg_count: Optional[float] = None
    total_count: Optional[float] = None
    std_dev_count: Optional[float] = None
    min_count: Optional[float] = None
    max_count: Optional[float] = None


def monthly_statistics_from_frame(df: pd.DataFrame) -> dict:
    """{month: MonthlyStatistic} from the storage month-of-year aggregate."""
    stats = {}
    if df is None or df.empty:
        return stats
    for row in df.itertuples(index=False):
        stats[int(row.month)] = MonthlyStatistic(
            month=int(row.month),
            occurrence_count=int(row.occurrence_count),
            avg_count=_num(row.avg_count),
            total_count=_num(row.total_count),
            std_dev_count=_num(row.std_dev_count),
            min_count=_num(row.min_count),
            max_count=_num(row.max_count),
        )
    return stats


def day_pattern_from_frame(df: pd.DataFrame) -> List[Tuple[int, int]]:
    if df is None or df.empty:
        return []
    return [(int(row.day), int(row.occurrence_count)) for row in df.itertuples(index=False)]


@dataclass
class Prediction:
    prediction_date: str                 # YYYYMMDD
    disease_name: str
    confidence_score: float              # 0–100
    risk_level: str                      # LOW | MEDIUM | HIGH | CRITICAL
    prediction_basis: dict = field(default_factory=dict)
    predicted_livestock_count: Optional[int] = None   # not forecast
    region: Optional[str] = None                      # not modelled
    livestock_species: Optional[str] = None

    def to_record(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Pure scoring functions
# ---------------------------------------------------------------------------

def round_half_up(value: float) -> int:
    """Round .5 upwards (2.5 → 3), unlike Python's banker's rounding."""
    return int(math.floor(value + 0.5))


def iter_horizon_months(today: date, horizon_months: int) -> Iterator[Tuple[int, int]]:
    """
    Yield (year, month) from the first of today's month while the cursor is
    on or before today + horizon_months (calendar months, day clamped to
    month end). horizon_months=3 on 2026-10-19 yields Oct 2026 … Jan 2027.
    """
    start  = pd.Timestamp(today).normalize()
    end    = start + pd.DateOffset(months=horizon_months)
    cursor = start.replace(day=1)
    while cursor <= end:
        yield cursor.year, cursor.month
        cursor = cursor + pd.DateOffset(months=1)


def classify_risk(monthly_frequency: int) -> str:
    for threshold, level in RISK_THRESHOLDS:
        if monthly_frequency >= threshold:
            return level
    return "LOW"


def frequency_factor(monthly_frequency: int) -> float:
    return min(float(FREQUENCY_CAP), monthly_frequency / FREQUENCY_SATURATION * FREQUENCY_CAP)


def volume_factor(total_occurrences: int) -> float:
    return min(float(VOLUME_CAP), total_occurrences / VOLUME_SATURATION * VOLUME_CAP)


def consistency_factor(std_dev_count: Optional[float], avg_count: Optional[float]) -> float:
    """Lower coefficient of variation → higher score; flat 15 when it cannot be computed."""
    if std_dev_count and avg_count and std_dev_count > 0 and avg_count > 0:
        cv = std_dev_count / avg_count
        return max(0.0, CONSISTENCY_CAP - cv * CV_PENALTY)
    return float(FLAT_CONSISTENCY)


def score_confidence(
    monthly_frequency: int,
    total_occurrences: int,
    std_dev_count: Optional[float],
    avg_count: Optional[float],
) -> Tuple[int, dict]:
    """
    Confidence (0–100) for a month with history, plus the factor breakdown.

    Example: frequency 25, total 300, std 0, avg 5
        → 40 (capped) + 30 (capped) + 15 (no variability) = 85
    """
    factors = {
        "frequency":   round(frequency_factor(monthly_frequency), 2),
        "data_volume": round(volume_factor(total_occurrences), 2),
        "consistency": round(consistency_factor(std_dev_count, avg_count), 2),
    }
    raw = (
        frequency_factor(monthly_frequency)
        + volume_factor(total_occurrences)
        + consistency_factor(std_dev_count, avg_count)
    )
    confidence = round_half_up(raw * 100 / MAX_CONFIDENCE)
    return max(0, min(100, confidence)), factors


def fallback_confidence(confidence: int) -> int:
    return max(FALLBACK_FLOOR, confidence - FALLBACK_PENALTY)


def low_confidence_score(total_occurrences: int) -> int:
    return min(LOW_CONFIDENCE_CAP, round_half_up(total_occurrences / LOW_CONFIDENCE_SCALE * LOW_CONFIDENCE_CAP))


def is_valid_day(year: int, month: int, day: int) -> bool:
    return 1 <= day <= calendar.monthrange(year, month)[1]


def _ymd(year: int, month: int, day: int) -> str:
    return f"{year:04d}{month:02d}{day:02d}"


def predict_month(
    disease_name: str,
    year: int,
    month: int,
    overall: OverallStatistic,
    monthly: Optional[MonthlyStatistic],
    pattern: List[Tuple[int, int]],
) -> List[Prediction]:
    """
    Predictions for one disease in one target (year, month).

    With history for the month, every calendar-valid day in `pattern` becomes a
    prediction sharing the month's confidence; an empty pattern collapses to a
    mid-month prediction at max(30, confidence - 20). Without history, a single
    LOW prediction on the 15th scaled by the disease's all-time volume.
    """
    total = overall.total_occurrences

    if monthly is None or monthly.occurrence_count <= 0:
        confidence = low_confidence_score(total)
        return [Prediction(
            prediction_date=_ymd(year, month, FALLBACK_DAY),
            disease_name=disease_name,
            confidence_score=float(confidence),
            risk_level="LOW",
            prediction_basis={
                "method":            METHOD_LOW_CONFIDENCE,
                "target_month":      month,
                "monthly_frequency": 0,
                "total_occurrences": total,
                "prediction_reason": f"no historical data for month {month}; mid-month estimate",
            },
        )]

    frequency        = monthly.occurrence_count
    per_month        = total / MONTHS_PER_YEAR
    ratio            = frequency / per_month if per_month else 0.0
    probability      = min(100, round_half_up(ratio * 50))
    confidence, factors = score_confidence(frequency, total, monthly.std_dev_count, monthly.avg_count)
    risk_level       = classify_risk(frequency)

    basis = {
        "target_month":              month,
        "monthly_frequency":         frequency,
        "total_occurrences":         total,
        "avg_occurrences_per_month": round(per_month, 2),
        "monthly_ratio":             round(ratio, 2),
        "occurrence_probability":    probability,
        "factors":                   factors,
        "monthly_avg_count":         monthly.avg_count,
        "monthly_std_dev_count":     monthly.std_dev_count,
    }

    if not pattern:
        return [Prediction(
            prediction_date=_ymd(year, month, FALLBACK_DAY),
            disease_name=disease_name,
            confidence_score=float(fallback_confidence(confidence)),
            risk_level=risk_level,
            prediction_basis={
                **basis,
                "method":            METHOD_MID_MONTH,
                "prediction_reason": f"mid-month fallback, no day pattern for month {month}",
            },
        )]

    predictions = []
    for day, day_count in pattern:
        if not is_valid_day(year, month, day):
            continue
        predictions.append(Prediction(
            prediction_date=_ymd(year, month, day),
            disease_name=disease_name,
            confidence_score=float(confidence),
            risk_level=risk_level,
            prediction_basis={
                **basis,
                "method":                     METHOD_DAY_PATTERN,
                "historical_day_occurrences": day_count,
                "prediction_reason":          f"past occurred on {month}/{day} {day_count} times",
            },
        ))
    return predictions


# ---------------------------------------------------------------------------
# Generator — storage-backed, one disease per worker
# ---------------------------------------------------------------------------

def _validate_horizon(horizon_months) -> int:
    if isinstance(horizon_months, bool) or not isinstance(horizon_months, int) or horizon_months < 1:
        raise ValueError(f"horizon_months must be a positive integer, got {horizon_months!r}")
    return horizon_months


class ForecastGenerator:
    """
    Builds the full prediction set from an OutbreakStore.

    Diseases share nothing, so each one runs on the thread pool; results are
    gathered back in disease-name order so the output sequence is stable.
    """

    def __init__(self, store, max_workers: int = FORECAST_WORKERS,
                 day_pattern_limit: int = DAY_PATTERN_LIMIT):
        self.store = store
        self.max_workers = max(1, max_workers)
        self.day_pattern_limit = day_pattern_limit

    def predict_disease(self, disease_name: str, months: List[Tuple[int, int]]) -> List[Prediction]:
        history = self.store.daily_history(disease_name)
        if history.empty:
            logger.info("No usable history for %s — skipped", disease_name)
            return []

        overall = OverallStatistic.from_frame(self.store.overall_statistics(disease_name))
        monthly = monthly_statistics_from_frame(self.store.monthly_statistics(disease_name))

        predictions: List[Prediction] = []
        for year, month in months:
            month_stat = monthly.get(month)
            pattern: List[Tuple[int, int]] = []
            if month_stat is not None and month_stat.occurrence_count > 0:
                pattern = day_pattern_from_frame(
                    self.store.day_pattern(disease_name, month, limit=self.day_pattern_limit)
                )
            predictions.extend(predict_month(disease_name, year, month, overall, month_stat, pattern))

        logger.debug("%s: %d predictions over %d months", disease_name, len(predictions), len(months))
        return predictions

    def generate(self, horizon_months: int = DEFAULT_HORIZON_MONTHS,
                 today: Optional[date] = None) -> List[Prediction]:
        horizon_months = _validate_horizon(horizon_months)
        today = today or date.today()
        months = list(iter_horizon_months(today, horizon_months))
        diseases = self.store.disease_names()

        logger.info(
            "Forecasting %d diseases over %d months (%04d-%02d → %04d-%02d)",
            len(diseases), len(months), *months[0], *months[-1],
        )

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(self.predict_disease, name, months) for name in diseases]
            per_disease = [future.result() for future in futures]

        return [prediction for batch in per_disease for prediction in batch]


# ---------------------------------------------------------------------------
# Run orchestration — one destructive regeneration at a time
# ---------------------------------------------------------------------------

_run_lock = threading.Lock()

# Latest run, exposed by GET /api/predictions/generate/status
_status: dict = {
    "is_running":          False,
    "started_at":          None,
    "finished_at":         None,
    "horizon_months":      None,
    "diseases_processed":  0,
    "predictions_created": 0,
    "error":               None,
}


def generation_status() -> dict:
    return dict(_status)


def regenerate_predictions(store, horizon_months: int = DEFAULT_HORIZON_MONTHS,
                           today: Optional[date] = None,
                           max_workers: int = FORECAST_WORKERS) -> dict:
    """
    Rebuild the whole prediction set and swap it in atomically.

    Raises GenerationInProgressError if another run holds the lock, ValueError
    for a bad horizon, StorageError if reading history or replacing fails (the
    previous prediction set is then left untouched). Never retries.

    Returns: {predictions_created, generated_at, horizon_months}
    """
    horizon_months = _validate_horizon(horizon_months)
    if not _run_lock.acquire(blocking=False):
        raise GenerationInProgressError("prediction generation is already running")

    try:
        _status.update({
            "is_running":          True,
            "started_at":          datetime.now(UTC).isoformat(),
            "finished_at":         None,
            "horizon_months":      horizon_months,
            "diseases_processed":  0,
            "predictions_created": 0,
            "error":               None,
        })
        try:
            generator   = ForecastGenerator(store, max_workers=max_workers)
            predictions = generator.generate(horizon_months, today=today)
            generated_at = datetime.now(UTC).isoformat()
            created = store.replace_predictions(
                (p.to_record() for p in predictions), generated_at=generated_at,
            )
        except Exception as exc:
            _status.update({"error": str(exc), "finished_at": datetime.now(UTC).isoformat()})
            logger.error("Prediction generation failed: %s", exc)
            raise

        _status.update({
            "finished_at":         generated_at,
            "diseases_processed":  len({p.disease_name for p in predictions}),
            "predictions_created": created,
        })
        logger.info("Generated %d predictions for %d months", created, horizon_months)
        return {
            "predictions_created": created,
            "generated_at":        generated_at,
            "horizon_months":      horizon_months,
        }
    finally:
        _status["is_running"] = False
        _run_lock.release()
