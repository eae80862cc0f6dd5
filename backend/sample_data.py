# backend/sample_data.py
#
# Seeded synthetic outbreak history for demos and tests.
# Record keys match storage.OCCURRENCE_COLUMNS; dates are YYYYMMDD strings.
#
# Each disease has a month-of-year weight profile (relative outbreak intensity)
# and a typical herd size per report. Outbreak days cluster around a few
# "hot" days per month so the day-of-month pattern has something to find.
#
# SEED_SAMPLE_DATA=1 loads this into an empty store when the API starts.

from typing import List

import numpy as np

SAMPLE_DISEASES = {
    # name: (monthly weights Jan..Dec, mean livestock count, species)
    "Highly pathogenic avian influenza": (
        [9, 7, 4, 2, 1, 0, 0, 0, 0, 2, 6, 10], 18000, "Chicken",
    ),
    "Foot-and-mouth disease": (
        [3, 4, 5, 3, 1, 0, 0, 0, 0, 0, 1, 2], 45, "Cattle",
    ),
    "African swine fever": (
        [0, 0, 1, 1, 2, 3, 4, 5, 5, 3, 1, 0], 900, "Swine",
    ),
    "Bovine brucellosis": (
        [1, 1, 2, 2, 2, 2, 1, 1, 2, 2, 1, 1], 6, "Cattle",
    ),
    "American foulbrood": (
        [0, 0, 0, 1, 2, 3, 2, 1, 0, 0, 0, 0], 30, "Honeybee",
    ),
}

SAMPLE_YEARS = (2019, 2020, 2021, 2022, 2023, 2024, 2025)

_DAYS_IN_MONTH = [31, 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31]


def generate_occurrences(years=SAMPLE_YEARS, seed: int = 42) -> List[dict]:
    """
    Synthetic occurrence records across `years`.

    Monthly outbreak counts are Poisson(weight) per year; days are drawn from
    three preferred days per (disease, month) 70% of the time, uniformly
    otherwise. About 5% of records have no livestock count, matching the
    upstream feed where the count field is often blank.
    """
    rng     = np.random.default_rng(seed)
    records = []
    serial  = 0

    for d_idx, (disease, (weights, mean_count, species)) in enumerate(SAMPLE_DISEASES.items()):
        hot_days = {
            month: rng.choice(np.arange(1, 29), size=3, replace=False)
            for month in range(1, 13)
        }
        for year in years:
            for month in range(1, 13):
                n_events = int(rng.poisson(weights[month - 1]))
                for _ in range(n_events):
                    if rng.random() < 0.7:
                        day = int(rng.choice(hot_days[month]))
                    else:
                        day = int(rng.integers(1, _DAYS_IN_MONTH[month - 1] + 1))

                    count = None
                    if rng.random() > 0.05:
                        count = int(max(1, rng.lognormal(np.log(mean_count), 0.6)))

                    serial += 1
                    records.append({
                        "occurrence_no":     f"S{year}{d_idx:02d}{serial:06d}",
                        "disease_name":      disease,
                        "farm_name":         f"Farm {int(rng.integers(1, 400)):03d}",
                        "occurrence_date":   f"{year:04d}{month:02d}{day:02d}",
                        "livestock_species": species,
                        "livestock_count":   count,
                        "diagnosis_agency":  "Animal and Plant Quarantine Agency",
                    })
    return records
