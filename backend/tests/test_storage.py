"""
backend/tests/test_storage.py

Tests for the DuckDB outbreak store: occurrence upserts, the aggregates the
forecast reads, and the atomic prediction replacement / listing.
Runs against an in-memory database.

Run: pytest backend/tests/test_storage.py -v
"""

import math

import pytest

from backend.storage import OutbreakStore, StorageError, occurrences_frame


def _occ(no, disease, day, count=10):
    return {"occurrence_no": no, "disease_name": disease, "occurrence_date": day, "livestock_count": count}


HISTORY = [
    _occ("1", "HPAI", "20231103"),
    _occ("2", "HPAI", "20231103"),
    _occ("3", "HPAI", "20241103"),
    _occ("4", "HPAI", "20241120", 30),
    _occ("5", "HPAI", "20250107"),
    _occ("6", "HPAI", "20250312", None),
    _occ("7", "HPAI", "2024-11-0"),
    _occ("8", "HPAI", "20241399"),
    _occ("9", "HPAI", None),
    _occ("10", "FMD", "20220430", 5),
    _occ("11", "FMD", "20230430", 7),
    _occ("12", "Rabies", "abcdefgh", 1),
]


def _pred(day, disease, risk="LOW", confidence=10.0, region=None):
    return {
        "prediction_date": day,
        "disease_name": disease,
        "predicted_livestock_count": None,
        "confidence_score": confidence,
        "prediction_basis": {"method": "historical_day_pattern"},
        "region": region,
        "livestock_species": None,
        "risk_level": risk,
    }


@pytest.fixture
def store():
    s = OutbreakStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def loaded(store):
    store.upsert_occurrences(HISTORY)
    return store


# ---------------------------------------------------------------------------
# Occurrences
# ---------------------------------------------------------------------------

class TestOccurrencesFrame:
    def test_missing_number_raises(self):
        with pytest.raises(ValueError, match="record 1"):
            occurrences_frame([_occ("1", "FMD", "20240101"), _occ("  ", "FMD", "20240102")])

    def test_bad_counts_become_null(self):
        frame = occurrences_frame([
            _occ("1", "FMD", "20240101", "12"),
            _occ("2", "FMD", "20240101", "-3"),
            _occ("3", "FMD", "20240101", "many"),
            _occ("4", "FMD", "20240101", 2.5),
        ])
        assert frame["livestock_count"].tolist()[0] == 12
        assert frame["livestock_count"].isna().tolist() == [False, True, True, True]

    def test_spreadsheet_float_dates_are_restored(self):
        frame = occurrences_frame([_occ(1001.0, "FMD", 20230115.0)])
        assert frame.loc[0, "occurrence_no"] == "1001"
        assert frame.loc[0, "occurrence_date"] == "20230115"

    def test_duplicate_numbers_keep_last(self):
        frame = occurrences_frame([_occ("1", "FMD", "20240101", 1), _occ("1", "FMD", "20240101", 9)])
        assert len(frame) == 1
        assert frame.loc[0, "livestock_count"] == 9


class TestUpsert:
    def test_counts_stored_rows(self, store):
        assert store.upsert_occurrences(HISTORY) == len(HISTORY)
        assert store.count_occurrences() == len(HISTORY)

    def test_same_number_replaces_record(self, loaded):
        loaded.upsert_occurrences([_occ("10", "FMD", "20220501", 5)])
        assert loaded.count_occurrences() == len(HISTORY)
        assert loaded.day_pattern("FMD", 5)["day"].tolist() == [1]

    def test_empty_batch_is_noop(self, store):
        assert store.upsert_occurrences([]) == 0
        assert store.count_occurrences() == 0


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

class TestAggregates:
    def test_malformed_dates_never_surface(self, loaded):
        # Rabies only has an unparseable date
        assert loaded.disease_names() == ["FMD", "HPAI"]
        months = loaded.monthly_statistics("HPAI")["month"].tolist()
        assert 13 not in months

    def test_daily_history_groups_by_exact_date(self, loaded):
        history = loaded.daily_history("HPAI")
        assert history["occurrence_date"].tolist() == [
            "20231103", "20241103", "20241120", "20250107", "20250312",
        ]
        assert history["occurrence_count"].tolist()[0] == 2

    def test_daily_history_unknown_disease_is_empty(self, loaded):
        assert loaded.daily_history("Rabies").empty

    def test_overall_ignores_rows_without_count(self, loaded):
        row = loaded.overall_statistics("HPAI").iloc[0]
        assert row["total_occurrences"] == 5
        assert row["overall_avg"] == pytest.approx(14.0)
        assert row["min_count"] == 10
        assert row["max_count"] == 30
        assert row["first_occurrence_date"] == "20231103"
        assert row["last_occurrence_date"] == "20250107"

    def test_monthly_merges_years(self, loaded):
        df = loaded.monthly_statistics("HPAI").set_index("month")
        assert df.index.tolist() == [1, 11]
        nov = df.loc[11]
        assert nov["occurrence_count"] == 4
        assert nov["avg_count"] == pytest.approx(15.0)
        assert nov["total_count"] == 60
        assert nov["std_dev_count"] == pytest.approx(math.sqrt(75))

    def test_day_pattern_includes_rows_without_count(self, loaded):
        pattern = loaded.day_pattern("HPAI", 3)
        assert pattern["day"].tolist() == [12]

    def test_day_pattern_orders_by_count(self, loaded):
        pattern = loaded.day_pattern("HPAI", 11)
        assert list(zip(pattern["day"], pattern["occurrence_count"])) == [(3, 3), (20, 1)]

    def test_day_pattern_ties_break_on_day_and_respect_limit(self, store):
        store.upsert_occurrences(
            [_occ(str(i), "ASF", f"202406{d:02d}") for i, d in enumerate([28, 9, 17, 2, 21, 5, 9])]
        )
        pattern = store.day_pattern("ASF", 6, limit=3)
        assert pattern["day"].tolist() == [9, 2, 5]


# ---------------------------------------------------------------------------
# Predictions
# ---------------------------------------------------------------------------

class TestReplacePredictions:
    def test_replaces_whole_set(self, store):
        store.replace_predictions([_pred("20261101", "HPAI"), _pred("20261102", "HPAI")], "t1")
        store.replace_predictions([_pred("20261201", "FMD")], "t2")
        rows = store.list_predictions()["list"]
        assert [(r["prediction_date"], r["disease_name"]) for r in rows] == [("20261201", "FMD")]
        assert rows[0]["created_at"] == "t2"

    def test_failure_keeps_previous_set(self, store):
        store.replace_predictions([_pred("20261101", "HPAI")], "t1")
        with pytest.raises(StorageError):
            store.replace_predictions([_pred("20261201", "FMD"), _pred(None, "FMD")], "t2")
        rows = store.list_predictions()["list"]
        assert [r["prediction_date"] for r in rows] == ["20261101"]
        assert rows[0]["created_at"] == "t1"

    def test_duplicate_date_and_disease_dropped(self, store):
        created = store.replace_predictions(
            [_pred("20261101", "HPAI", confidence=40.0), _pred("20261101", "HPAI", confidence=90.0)], "t1",
        )
        assert created == 1
        assert store.list_predictions()["list"][0]["confidence_score"] == 40.0

    def test_empty_set_clears(self, store):
        store.replace_predictions([_pred("20261101", "HPAI")], "t1")
        assert store.replace_predictions([], "t2") == 0
        assert store.list_predictions()["pagination"]["total"] == 0

    def test_basis_round_trips_as_dict(self, store):
        store.replace_predictions([_pred("20261101", "HPAI")], "t1")
        row = store.list_predictions()["list"][0]
        assert row["prediction_basis"] == {"method": "historical_day_pattern"}
        assert isinstance(row["id"], int)


@pytest.fixture
def predicted(store):
    store.replace_predictions([
        _pred("20261115", "FMD", "LOW"),
        _pred("20261103", "HPAI", "HIGH", 70.0),
        _pred("20261103", "ASF", "CRITICAL", 90.0),
        _pred("20261203", "HPAI", "MEDIUM", 50.0, region="Gyeonggi"),
        _pred("20270107", "Highly Pathogenic AI", "LOW", 20.0),
    ], "2026-10-19T00:00:00+00:00")
    return store


class TestListPredictions:
    def test_orders_by_date_then_risk(self, predicted):
        rows = predicted.list_predictions()["list"]
        assert [(r["prediction_date"], r["risk_level"]) for r in rows] == [
            ("20261103", "CRITICAL"),
            ("20261103", "HIGH"),
            ("20261115", "LOW"),
            ("20261203", "MEDIUM"),
            ("20270107", "LOW"),
        ]

    def test_disease_filter_is_case_insensitive_substring(self, predicted):
        rows = predicted.list_predictions(disease_name="hpai")["list"]
        assert {r["disease_name"] for r in rows} == {"HPAI"}
        rows = predicted.list_predictions(disease_name="ai")["list"]
        assert len(rows) == 3

    def test_date_prefix_filter(self, predicted):
        assert predicted.list_predictions(prediction_date="202611")["pagination"]["total"] == 3
        assert predicted.list_predictions(prediction_date="2027")["pagination"]["total"] == 1
        assert predicted.list_predictions(prediction_date="20261103")["pagination"]["total"] == 2

    def test_risk_filter_accepts_lowercase(self, predicted):
        rows = predicted.list_predictions(risk_level="low")["list"]
        assert {r["risk_level"] for r in rows} == {"LOW"}
        assert len(rows) == 2

    def test_region_filter(self, predicted):
        rows = predicted.list_predictions(region="gyeong")["list"]
        assert [r["prediction_date"] for r in rows] == ["20261203"]

    def test_pagination(self, predicted):
        result = predicted.list_predictions(page=2, limit=2)
        assert [r["prediction_date"] for r in result["list"]] == ["20261115", "20261203"]
        assert result["pagination"] == {"total": 5, "page": 2, "limit": 2, "total_pages": 3}

    def test_page_past_end_is_empty(self, predicted):
        result = predicted.list_predictions(page=9, limit=2)
        assert result["list"] == []
        assert result["pagination"]["total"] == 5

    def test_rejects_non_positive_paging(self, predicted):
        with pytest.raises(ValueError):
            predicted.list_predictions(page=0)


class TestPredictionStatistics:
    def test_summary(self, predicted):
        stats = predicted.prediction_statistics()
        assert stats["total"] == 5
        assert stats["first_prediction_date"] == "20261103"
        assert stats["last_prediction_date"] == "20270107"
        assert stats["generated_at"] == "2026-10-19T00:00:00+00:00"
        assert stats["by_risk_level"] == {"LOW": 2, "MEDIUM": 1, "HIGH": 1, "CRITICAL": 1}

    def test_by_disease(self, predicted):
        by_disease = {d["disease_name"]: d for d in predicted.prediction_statistics()["by_disease"]}
        hpai = by_disease["HPAI"]
        assert hpai["prediction_count"] == 2
        assert hpai["avg_confidence"] == pytest.approx(60.0)
        assert hpai["max_confidence"] == 70.0
        assert hpai["first_prediction_date"] == "20261103"
        assert hpai["last_prediction_date"] == "20261203"

    def test_empty_store(self, store):
        stats = store.prediction_statistics()
        assert stats["total"] == 0
        assert stats["first_prediction_date"] is None
        assert stats["by_risk_level"] == {"LOW": 0, "MEDIUM": 0, "HIGH": 0, "CRITICAL": 0}
        assert stats["by_disease"] == []


def test_closed_store_raises_storage_error(store):
    store.close()
    with pytest.raises(StorageError):
        store.count_occurrences()
