"""
ingest_occurrences.py
---------------------
Load livestock disease occurrence exports (CSV or Excel) into the outbreak
store, optionally regenerating predictions afterwards.

Column mapping (upstream feed → store):
    ICTSD_OCCRRNC_NO            → occurrence_no   (required — rows without it are skipped)
    LKNTS_NM                    → disease_name
    FARM_NM                     → farm_name
    FARM_LOCPLC_LEGALDONG_CODE  → legal_dong_code
    FARM_LOCPLC                 → farm_address
    OCCRRNC_DE                  → occurrence_date (YYYYMMDD; other formats are kept
                                  verbatim and ignored by the forecast)
    LVSTCKSPC_CODE              → livestock_species_code
    LVSTCKSPC_NM                → livestock_species
    OCCRRNC_LVSTCKCNT           → livestock_count (blank / non-integer → null)
    DGNSS_ENGN_CODE             → diagnosis_agency_code
    DGNSS_ENGN_NM               → diagnosis_agency
    CESSATION_DE                → cessation_date

Files already using the snake_case store names are accepted as-is.

Usage:
    python ingest_occurrences.py data/occurrences.xlsx
    python ingest_occurrences.py data/occurrences.csv --db data/outbreaks.duckdb --generate 12
"""

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd

from backend.config import DB_PATH, LOG_LEVEL
from backend.storage import OCCURRENCE_COLUMNS, OutbreakStore, StorageError

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────
FEED_COLUMNS = {
    "ICTSD_OCCRRNC_NO":           "occurrence_no",
    "LKNTS_NM":                   "disease_name",
    "FARM_NM":                    "farm_name",
    "FARM_LOCPLC_LEGALDONG_CODE": "legal_dong_code",
    "FARM_LOCPLC":                "farm_address",
    "OCCRRNC_DE":                 "occurrence_date",
    "LVSTCKSPC_CODE":             "livestock_species_code",
    "LVSTCKSPC_NM":               "livestock_species",
    "OCCRRNC_LVSTCKCNT":          "livestock_count",
    "DGNSS_ENGN_CODE":            "diagnosis_agency_code",
    "DGNSS_ENGN_NM":              "diagnosis_agency",
    "CESSATION_DE":               "cessation_date",
}


def read_export(path: str) -> pd.DataFrame:
    """Read a CSV or XLSX export with every column as text."""
    suffix = Path(path).suffix.lower()
    if suffix in {".xlsx", ".xls"}:
        return pd.read_excel(path, engine="openpyxl", dtype=str)
    return pd.read_csv(path, dtype=str, keep_default_na=True)


def normalize_export(df: pd.DataFrame) -> pd.DataFrame:
    """
    Map feed column names to store names and keep only OCCURRENCE_COLUMNS.

    Missing optional columns are added as null; rows without an occurrence
    number are dropped.
    """
    df = df.copy()
    df.columns = df.columns.str.strip()
    df = df.rename(columns={c: FEED_COLUMNS.get(c.upper(), c.lower()) for c in df.columns})

    if "occurrence_no" not in df.columns:
        raise ValueError("export has no ICTSD_OCCRRNC_NO / occurrence_no column")

    for col in OCCURRENCE_COLUMNS:
        if col not in df.columns:
            df[col] = None

    out = df[OCCURRENCE_COLUMNS]
    out = out.astype(object).where(out.notna(), None)
    numbered = out["occurrence_no"].map(lambda v: v is not None and str(v).strip() != "")
    skipped = int((~numbered).sum())
    if skipped:
        logger.warning("Skipping %d rows without an occurrence number", skipped)
    return out[numbered].reset_index(drop=True)


# ── CLI ───────────────────────────────────────────────────────────────────────
def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Load livestock disease occurrence exports into the outbreak store"
    )
    parser.add_argument("input", help="Path to .csv or .xlsx export")
    parser.add_argument("--db", default=DB_PATH,
                        help=f"DuckDB database file (default: {DB_PATH})")
    parser.add_argument("--generate", type=int, default=None, metavar="MONTHS",
                        help="Regenerate predictions for MONTHS months after loading")
    args = parser.parse_args(argv)

    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")

    try:
        df = normalize_export(read_export(args.input))
    except ValueError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    if args.db != ":memory:":
        Path(args.db).parent.mkdir(parents=True, exist_ok=True)
    store = OutbreakStore(args.db)
    try:
        stored = store.upsert_occurrences(df.to_dict(orient="records"))
        print(f"✓ Loaded {stored} occurrence records → {args.db}")
        print(f"  Diseases: {store.disease_names()}")

        if args.generate is not None:
            from backend.forecast import regenerate_predictions
            result = regenerate_predictions(store, args.generate)
            print(f"✓ Generated {result['predictions_created']} predictions "
                  f"for {result['horizon_months']} months at {result['generated_at']}")
    except (StorageError, ValueError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
