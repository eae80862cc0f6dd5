"""
backend/storage.py

DuckDB-backed store for historical outbreak occurrences and the generated
prediction set.

Tables:
    occurrence       one row per upstream outbreak report, keyed by occurrence_no
    prediction       the current forecast; replaced wholesale on every run

View:
    valid_occurrence occurrence rows with a disease name and a well-formed
                     YYYYMMDD date, plus occ_year / occ_month / occ_day columns.
                     Every aggregate below reads from this view, so malformed
                     dates never reach the forecast.

Reads go through short-lived cursors (one per call) so the forecast fan-out can
query from worker threads. Writes are serialised by a lock and wrapped in a
transaction; readers only ever see a committed prediction set.
"""

import json
import logging
import math
import threading
from typing import Iterable, List, Optional

import duckdb
import pandas as pd

logger = logging.getLogger(__name__)

OCCURRENCE_COLUMNS = [
    "occurrence_no",
    "disease_name",
    "farm_name",
    "legal_dong_code",
    "farm_address",
    "occurrence_date",
    "livestock_species_code",
    "livestock_species",
    "livestock_count",
    "diagnosis_agency_code",
    "diagnosis_agency",
    "cessation_date",
]

PREDICTION_COLUMNS = [
    "prediction_date",
    "disease_name",
    "predicted_livestock_count",
    "confidence_score",
    "prediction_basis",
    "region",
    "livestock_species",
    "risk_level",
]

RISK_LEVELS = ["LOW", "MEDIUM", "HIGH", "CRITICAL"]

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS occurrence (
        occurrence_no          VARCHAR PRIMARY KEY,
        disease_name           VARCHAR,
        farm_name              VARCHAR,
        legal_dong_code        VARCHAR,
        farm_address           VARCHAR,
        occurrence_date        VARCHAR,
        livestock_species_code VARCHAR,
        livestock_species      VARCHAR,
        livestock_count        INTEGER,
        diagnosis_agency_code  VARCHAR,
        diagnosis_agency       VARCHAR,
        cessation_date         VARCHAR
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS prediction_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS prediction (
        id                        BIGINT DEFAULT nextval('prediction_id_seq'),
        prediction_date           VARCHAR NOT NULL,
        disease_name              VARCHAR NOT NULL,
        predicted_livestock_count INTEGER,
        confidence_score          DOUBLE DEFAULT 0,
        prediction_basis          VARCHAR,
        region                    VARCHAR,
        livestock_species         VARCHAR,
        risk_level                VARCHAR,
        created_at                VARCHAR
    )
    """,
    """
    CREATE OR REPLACE VIEW valid_occurrence AS
    SELECT
        occurrence_no,
        disease_name,
        occurrence_date,
        livestock_count,
        TRY_CAST(substr(occurrence_date, 1, 4) AS INTEGER) AS occ_year,
        TRY_CAST(substr(occurrence_date, 5, 2) AS INTEGER) AS occ_month,
        TRY_CAST(substr(occurrence_date, 7, 2) AS INTEGER) AS occ_day
    FROM occurrence
    WHERE disease_name IS NOT NULL
      AND disease_name <> ''
      AND regexp_full_match(occurrence_date, '[0-9]{8}')
      AND TRY_CAST(substr(occurrence_date, 5, 2) AS INTEGER) BETWEEN 1 AND 12
      AND TRY_CAST(substr(occurrence_date, 7, 2) AS INTEGER) BETWEEN 1 AND 31
    """,
]

# CRITICAL sorts first when ordering by this expression DESC
_RISK_ORDINAL_SQL = (
    "CASE risk_level WHEN 'CRITICAL' THEN 4 WHEN 'HIGH' THEN 3 "
    "WHEN 'MEDIUM' THEN 2 WHEN 'LOW' THEN 1 ELSE 0 END"
)


class StorageError(RuntimeError):
    """Raised when the underlying database rejects a query or a write."""


def _records(cursor) -> List[dict]:
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _clean_count(value) -> Optional[int]:
    """Coerce a livestock count to a non-negative int; anything else becomes None."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or number < 0 or not number.is_integer():
        return None
    return int(number)


def _clean_text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            value = int(value)   # spreadsheet cells: 20230115.0 → "20230115"
    text = str(value).strip()
    return text or None


def occurrences_frame(records: Iterable[dict]) -> pd.DataFrame:
    """
    Normalise raw occurrence dicts into a frame with exactly OCCURRENCE_COLUMNS.

    Text fields are stripped (empty → None). Dates are kept verbatim; malformed
    ones are filtered later by the valid_occurrence view. Counts that are not
    non-negative integers become null. Raises ValueError when a record has no
    occurrence_no.
    """
    rows = []
    for i, record in enumerate(records):
        occurrence_no = _clean_text(record.get("occurrence_no"))
        if occurrence_no is None:
            raise ValueError(f"record {i} has no occurrence_no")
        row = {col: _clean_text(record.get(col)) for col in OCCURRENCE_COLUMNS}
        row["occurrence_no"]   = occurrence_no
        row["livestock_count"] = _clean_count(record.get("livestock_count"))
        rows.append(row)

    frame = pd.DataFrame(rows, columns=OCCURRENCE_COLUMNS)
    frame["livestock_count"] = frame["livestock_count"].astype("Int64")
    return frame.drop_duplicates(subset=["occurrence_no"], keep="last").reset_index(drop=True)


class OutbreakStore:
    """Owns one DuckDB database holding occurrences and predictions."""

    def __init__(self, database: str = ":memory:"):
        self.database = database
        try:
            self._con = duckdb.connect(database=database)
            for statement in _SCHEMA:
                self._con.execute(statement)
        except duckdb.Error as exc:
            raise StorageError(f"cannot open outbreak store at {database}: {exc}") from exc
        self._write_lock = threading.Lock()

    def close(self) -> None:
        self._con.close()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    def _cursor(self):
        try:
            return self._con.cursor()
        except duckdb.Error as exc:
            raise StorageError(f"outbreak store unavailable: {exc}") from exc

    def _query_df(self, sql: str, params: Optional[list] = None) -> pd.DataFrame:
        cur = self._cursor()
        try:
            return cur.execute(sql, params or []).df()
        except duckdb.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            cur.close()

    @staticmethod
    def _in_transaction(cur, *statements: str) -> None:
        """Run statements in one transaction on `cur`; roll back and re-raise on failure."""
        cur.execute("BEGIN TRANSACTION")
        try:
            for statement in statements:
                cur.execute(statement)
            cur.execute("COMMIT")
        except duckdb.Error:
            cur.execute("ROLLBACK")
            raise

    def _query_records(self, sql: str, params: Optional[list] = None) -> List[dict]:
        cur = self._cursor()
        try:
            cur.execute(sql, params or [])
            return _records(cur)
        except duckdb.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            cur.close()

    # ------------------------------------------------------------------
    # Occurrences
    # ------------------------------------------------------------------

    def upsert_occurrences(self, records: Iterable[dict]) -> int:
        """Insert or replace occurrence records by occurrence_no. Returns rows stored."""
        incoming = occurrences_frame(records)
        if incoming.empty:
            return 0

        columns = ", ".join(OCCURRENCE_COLUMNS)
        selected = ", ".join(
            f"CAST({col} AS INTEGER)" if col == "livestock_count" else f"CAST({col} AS VARCHAR)"
            for col in OCCURRENCE_COLUMNS
        )
        with self._write_lock:
            cur = self._cursor()
            try:
                cur.register("incoming_occurrence", incoming)
                self._in_transaction(
                    cur,
                    f"INSERT OR REPLACE INTO occurrence ({columns}) "
                    f"SELECT {selected} FROM incoming_occurrence",
                )
            except duckdb.Error as exc:
                raise StorageError(f"occurrence upsert failed: {exc}") from exc
            finally:
                cur.close()

        logger.info("Stored %d occurrence records", len(incoming))
        return len(incoming)

    def count_occurrences(self) -> int:
        rows = self._query_records("SELECT COUNT(*) AS n FROM occurrence")
        return int(rows[0]["n"])

    def disease_names(self) -> List[str]:
        df = self._query_df(
            "SELECT DISTINCT disease_name FROM valid_occurrence ORDER BY disease_name"
        )
        return df["disease_name"].tolist()

    def daily_history(self, disease_name: str) -> pd.DataFrame:
        """All usable records for one disease grouped by (year, month, exact date)."""
        return self._query_df(
            """
            SELECT
                occ_year                   AS year,
                occ_month                  AS month,
                occurrence_date,
                COUNT(*)                   AS occurrence_count,
                AVG(livestock_count)       AS avg_livestock_count,
                SUM(livestock_count)       AS total_livestock_count,
                STDDEV_POP(livestock_count) AS std_dev
            FROM valid_occurrence
            WHERE disease_name = ?
            GROUP BY occ_year, occ_month, occurrence_date
            ORDER BY occurrence_date
            """,
            [disease_name],
        )

    def overall_statistics(self, disease_name: str) -> pd.DataFrame:
        """Single-row frame of all-time count statistics (rows with a livestock count only)."""
        return self._query_df(
            """
            SELECT
                COUNT(*)                    AS total_occurrences,
                AVG(livestock_count)        AS overall_avg,
                STDDEV_POP(livestock_count) AS overall_std_dev,
                MIN(livestock_count)        AS min_count,
                MAX(livestock_count)        AS max_count,
                MIN(occurrence_date)        AS first_occurrence_date,
                MAX(occurrence_date)        AS last_occurrence_date
            FROM valid_occurrence
            WHERE disease_name = ?
              AND livestock_count IS NOT NULL
            """,
            [disease_name],
        )

    def monthly_statistics(self, disease_name: str) -> pd.DataFrame:
        """Per month-of-year statistics, years merged. Months without records are absent."""
        return self._query_df(
            """
            SELECT
                occ_month                   AS month,
                COUNT(*)                    AS occurrence_count,
                AVG(livestock_count)        AS avg_count,
                SUM(livestock_count)        AS total_count,
                STDDEV_POP(livestock_count) AS std_dev_count,
                MIN(livestock_count)        AS min_count,
                MAX(livestock_count)        AS max_count
            FROM valid_occurrence
            WHERE disease_name = ?
              AND livestock_count IS NOT NULL
            GROUP BY occ_month
            ORDER BY occ_month
            """,
            [disease_name],
        )

    def day_pattern(self, disease_name: str, month: int, limit: int = 5) -> pd.DataFrame:
        """Most frequent days-of-month for a disease in one calendar month, ties by day."""
        return self._query_df(
            """
            SELECT occ_day AS day, COUNT(*) AS occurrence_count
            FROM valid_occurrence
            WHERE disease_name = ?
              AND occ_month = ?
            GROUP BY occ_day
            ORDER BY occurrence_count DESC, day ASC
            LIMIT ?
            """,
            [disease_name, int(month), int(limit)],
        )

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def replace_predictions(self, rows: Iterable[dict], generated_at: str) -> int:
        """
        Atomically swap the whole prediction set for `rows`.

        Delete and insert share one transaction: on any failure the transaction
        is rolled back, the previous set stays visible and StorageError is raised.
        Rows repeating an earlier (prediction_date, disease_name) are dropped.
        Returns the number of rows inserted.
        """
        frame = pd.DataFrame(list(rows), columns=PREDICTION_COLUMNS)
        frame = frame.drop_duplicates(subset=["prediction_date", "disease_name"], keep="first")
        frame["prediction_basis"] = [
            basis if isinstance(basis, str) or basis is None else json.dumps(basis, ensure_ascii=False)
            for basis in frame["prediction_basis"]
        ]
        frame["confidence_score"] = frame["confidence_score"].astype(float)
        frame["created_at"] = generated_at

        statements = ["DELETE FROM prediction"]
        if not frame.empty:
            statements.append(
                """
                INSERT INTO prediction (
                    prediction_date, disease_name, predicted_livestock_count,
                    confidence_score, prediction_basis, region,
                    livestock_species, risk_level, created_at
                )
                SELECT
                    CAST(prediction_date AS VARCHAR),
                    CAST(disease_name AS VARCHAR),
                    CAST(predicted_livestock_count AS INTEGER),
                    CAST(confidence_score AS DOUBLE),
                    CAST(prediction_basis AS VARCHAR),
                    CAST(region AS VARCHAR),
                    CAST(livestock_species AS VARCHAR),
                    CAST(risk_level AS VARCHAR),
                    CAST(created_at AS VARCHAR)
                FROM incoming_prediction
                """
            )

        with self._write_lock:
            cur = self._cursor()
            try:
                if not frame.empty:
                    cur.register("incoming_prediction", frame)
                self._in_transaction(cur, *statements)
            except duckdb.Error as exc:
                logger.error("Prediction replacement rolled back: %s", exc)
                raise StorageError(f"prediction replacement failed: {exc}") from exc
            finally:
                cur.close()

        logger.info("Replaced prediction set with %d rows", len(frame))
        return len(frame)

    def list_predictions(
        self,
        disease_name: Optional[str] = None,
        prediction_date: Optional[str] = None,
        region: Optional[str] = None,
        risk_level: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        """
        Paginated prediction rows, ordered by date ascending then risk descending.

        disease_name / region are case-insensitive substring filters,
        prediction_date is a prefix ("2026", "202611", "20261115"),
        risk_level is matched exactly (case-insensitive input).
        """
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")

        clauses, params = [], []
        if disease_name:
            clauses.append("disease_name ILIKE ?")
            params.append(f"%{disease_name}%")
        if prediction_date:
            clauses.append("prediction_date LIKE ?")
            params.append(f"{prediction_date}%")
        if region:
            clauses.append("region ILIKE ?")
            params.append(f"%{region}%")
        if risk_level:
            clauses.append("risk_level = ?")
            params.append(risk_level.upper())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        total = int(self._query_records(f"SELECT COUNT(*) AS n FROM prediction {where}", params)[0]["n"])
        rows = self._query_records(
            f"""
            SELECT id, prediction_date, disease_name, predicted_livestock_count,
                   confidence_score, prediction_basis, region, livestock_species,
                   risk_level, created_at
            FROM prediction
            {where}
            ORDER BY prediction_date ASC, {_RISK_ORDINAL_SQL} DESC, id ASC
            LIMIT ? OFFSET ?
            """,
            params + [limit, (page - 1) * limit],
        )
        for row in rows:
            if row["prediction_basis"]:
                row["prediction_basis"] = json.loads(row["prediction_basis"])

        return {
            "list": rows,
            "pagination": {
                "total":       total,
                "page":        page,
                "limit":       limit,
                "total_pages": math.ceil(total / limit),
            },
        }

    def prediction_statistics(self) -> dict:
        """Summary of the current prediction set: totals, risk mix, per-disease breakdown."""
        summary = self._query_records(
            """
            SELECT COUNT(*)             AS total,
                   MIN(prediction_date) AS first_prediction_date,
                   MAX(prediction_date) AS last_prediction_date,
                   MAX(created_at)      AS generated_at
            FROM prediction
            """
        )[0]

        by_risk = {level: 0 for level in RISK_LEVELS}
        for row in self._query_records(
            "SELECT risk_level, COUNT(*) AS n FROM prediction GROUP BY risk_level"
        ):
            if row["risk_level"] in by_risk:
                by_risk[row["risk_level"]] = int(row["n"])

        by_disease = self._query_records(
            """
            SELECT disease_name,
                   COUNT(*)                       AS prediction_count,
                   ROUND(AVG(confidence_score), 2) AS avg_confidence,
                   MAX(confidence_score)          AS max_confidence,
                   MIN(prediction_date)           AS first_prediction_date,
                   MAX(prediction_date)           AS last_prediction_date
            FROM prediction
            GROUP BY disease_name
            ORDER BY prediction_count DESC, disease_name ASC
            """
        )
        return {
            "total":                 int(summary["total"]),
            "first_prediction_date": summary["first_prediction_date"],
            "last_prediction_date":  summary["last_prediction_date"],
            "generated_at":          summary["generated_at"],
            "by_risk_level":         by_risk,
            "by_disease":            by_disease,
        }
