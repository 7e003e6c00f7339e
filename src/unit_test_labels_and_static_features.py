"""
Test suite for target_data.py and static_features.py

Covers:
- Mortality label windows and their boundaries
- Baseline feature scaling, sparse and dense encodings
- Comorbidity flag decoding and admission matching
"""
import numpy as np
import pandas as pd
import pytest

from icu_note_features.static_features import (
    BASELINE_FEATURE_NAMES,
    COMORBIDITY_FLAG_COUNT,
    MAX_SAPS2_SCORE,
    MalformedComorbidityError,
    construct_baseline_feature_arrays,
    construct_baseline_feature_tuples,
    construct_derived_features,
    decode_comorbidity_flags,
)
from icu_note_features.target_data import (
    MORTALITY_1_YEAR_DAYS,
    MORTALITY_30_DAYS,
    MortalityWindow,
    generate_label_tuples,
)

IN_DATE = pd.Timestamp("2150-01-01")
OUT_DATE = pd.Timestamp("2150-01-10")

# patient_id -> date of death, relative to the ICU stay above
DEATHS = {
    1: pd.Timestamp("2150-01-05"),                          # during the stay
    2: OUT_DATE + pd.Timedelta(days=30),                     # 30 whole days after discharge
    3: OUT_DATE + pd.Timedelta(days=30, hours=23),           # truncated to 30 days
    4: OUT_DATE + pd.Timedelta(days=31),
    5: OUT_DATE + pd.Timedelta(days=365),
    6: OUT_DATE + pd.Timedelta(days=366),
    7: pd.NaT,                                               # alive
    8: OUT_DATE,                                             # at discharge
    9: IN_DATE,                                              # at admission
}

EXPECTED_LABELS = {
    MortalityWindow.IN_ICU:     {1: 1, 2: 0, 3: 0, 4: 0, 5: 0, 6: 0, 7: 0, 8: 1, 9: 1},
    MortalityWindow.IN_30_DAYS: {1: 0, 2: 1, 3: 1, 4: 0, 5: 0, 6: 0, 7: 0, 8: 0, 9: 0},
    MortalityWindow.IN_1_YEAR:  {1: 0, 2: 1, 3: 1, 4: 1, 5: 1, 6: 0, 7: 0, 8: 0, 9: 0},
}


def _patients(patient_ids, ages=None, is_male=None, dods=None) -> pd.DataFrame:
    n = len(patient_ids)
    dods = dods if dods is not None else [pd.NaT] * n
    return pd.DataFrame({
        "patient_id": patient_ids,
        "is_male": is_male if is_male is not None else [1] * n,
        "dob": [pd.Timestamp("2100-01-01")] * n,
        "is_dead": [int(not pd.isna(d)) for d in dods],
        "dod": pd.to_datetime(pd.Series(dods, dtype=object)),
        "index_date": [pd.NaT] * n,
        "age": ages if ages is not None else [50.0] * n,
    })


def _icu_stays(patient_ids, hadm_ids=None, icustay_ids=None) -> pd.DataFrame:
    n = len(patient_ids)
    return pd.DataFrame({
        "patient_id": patient_ids,
        "hadm_id": hadm_ids if hadm_ids is not None else [pid * 10 for pid in patient_ids],
        "icustay_id": icustay_ids if icustay_ids is not None else [pid * 100 for pid in patient_ids],
        "in_date": [IN_DATE] * n,
        "out_date": [OUT_DATE] * n,
    })


class TestMortalityLabels:
    """Tests for generate_label_tuples."""

    def setup_method(self):
        patient_ids = list(DEATHS)
        self.patients = _patients(patient_ids, dods=list(DEATHS.values()))
        self.icu_stays = _icu_stays(patient_ids)

    def test_window_constants(self):
        assert MORTALITY_30_DAYS == 30
        assert MORTALITY_1_YEAR_DAYS == 365

    @pytest.mark.parametrize("window", list(MortalityWindow))
    def test_label_windows(self, window):
        labels = generate_label_tuples(self.patients, self.icu_stays, window)

        assert list(labels.columns) == ["patient_id", "label"]
        assert dict(zip(labels["patient_id"], labels["label"])) == EXPECTED_LABELS[window]

    def test_window_given_by_value(self):
        labels = generate_label_tuples(self.patients, self.icu_stays, "in_30_days")

        assert dict(zip(labels["patient_id"], labels["label"])) == EXPECTED_LABELS[MortalityWindow.IN_30_DAYS]

    def test_thirty_day_deaths_are_one_year_deaths(self):
        thirty = generate_label_tuples(self.patients, self.icu_stays, MortalityWindow.IN_30_DAYS)
        year = generate_label_tuples(self.patients, self.icu_stays, MortalityWindow.IN_1_YEAR)

        merged = thirty.merge(year, on="patient_id", suffixes=("_30", "_365"))
        assert (merged["label_30"] <= merged["label_365"]).all()

    def test_labels_are_binary_integers(self):
        labels = generate_label_tuples(self.patients, self.icu_stays, MortalityWindow.IN_1_YEAR)

        assert set(labels["label"]) <= {0, 1}
        assert labels["label"].dtype.kind == "i"

    def test_unknown_window_raises(self):
        with pytest.raises(ValueError):
            generate_label_tuples(self.patients, self.icu_stays, "in_10_years")


class TestBaselineFeatures:
    """Tests for construct_baseline_feature_tuples / construct_baseline_feature_arrays."""

    def setup_method(self):
        self.patients = _patients([1, 2, 3], ages=[44.5, 89.0, 60.0], is_male=[1, 0, 1])
        self.icu_stays = _icu_stays([1, 2, 3])
        self.saps2s = pd.DataFrame({
            "patient_id": [1, 2, 3],
            "hadm_id": [10, 20, 30],
            "icustay_id": [100, 200, 999],      # patient 3: score of another ICU stay
            "score": [81.5, 163.0, 40.0],
        })

    def test_scaled_dense_arrays(self):
        arrays = construct_baseline_feature_arrays(self.patients, self.icu_stays, self.saps2s)

        assert arrays["patient_id"].tolist() == [1, 2]
        np.testing.assert_allclose(arrays["features"][0], [0.5, 1.0, 0.5])
        np.testing.assert_allclose(arrays["features"][1], [1.0, 0.0, 1.0])

    def test_sparse_tuples(self):
        tuples = construct_baseline_feature_tuples(self.patients, self.icu_stays, self.saps2s)

        assert list(tuples.columns) == ["patient_id", "feature_name", "value"]
        assert len(tuples) == 2 * len(BASELINE_FEATURE_NAMES)
        values = tuples.set_index(["patient_id", "feature_name"])["value"]
        assert values[(1, "saps_score")] == pytest.approx(81.5 / MAX_SAPS2_SCORE)
        assert values[(2, "patient_sex")] == 0.0

    def test_sparse_and_dense_agree(self):
        tuples = construct_baseline_feature_tuples(self.patients, self.icu_stays, self.saps2s)
        arrays = construct_baseline_feature_arrays(self.patients, self.icu_stays, self.saps2s)

        for patient_id, features in zip(arrays["patient_id"], arrays["features"]):
            rows = tuples[tuples["patient_id"] == patient_id].set_index("feature_name")["value"]
            np.testing.assert_allclose([rows[name] for name in BASELINE_FEATURE_NAMES], features)

    def test_values_in_unit_interval(self):
        tuples = construct_baseline_feature_tuples(self.patients, self.icu_stays, self.saps2s)

        assert tuples["value"].between(0.0, 1.0).all()

    def test_temporal_filter_is_applied(self):
        first_note_dates = pd.DataFrame({
            "patient_id": [1, 2],
            "first_note_date": [pd.Timestamp("2150-01-01"), pd.Timestamp("2150-01-09 12:00")],
        })

        arrays = construct_baseline_feature_arrays(
            self.patients, self.icu_stays, self.saps2s, first_note_dates=first_note_dates, hours=24)

        assert arrays["patient_id"].tolist() == [1]

    def test_no_scores_gives_empty_tuples(self):
        tuples = construct_baseline_feature_tuples(self.patients, self.icu_stays, self.saps2s.iloc[0:0])

        assert tuples.empty
        assert list(tuples.columns) == ["patient_id", "feature_name", "value"]


class TestComorbidityFeatures:
    """Tests for decode_comorbidity_flags and construct_derived_features."""

    def setup_method(self):
        self.patients = _patients([1, 2, 3])
        self.icu_stays = _icu_stays([1, 2, 3])
        self.comorbidities = pd.DataFrame({
            "patient_id": [1, 1, 2],
            "hadm_id": [10, 11, 20],                # hadm 11 is not the retained admission
            "all_values": ["1" + "0" * 29, "1" * 30, "0" * 29 + "1" + "11"],
        })

    def test_decode_flags(self):
        flags = decode_comorbidity_flags("000001" + "0" * 24)

        assert flags.shape == (COMORBIDITY_FLAG_COUNT,)
        assert flags[5] == 1.0
        assert flags.sum() == 1.0

    def test_extra_characters_are_ignored(self):
        flags = decode_comorbidity_flags("0" * 30 + "1111")

        assert flags.shape == (COMORBIDITY_FLAG_COUNT,)
        assert flags.sum() == 0.0

    @pytest.mark.parametrize("value", ["0" * 29, "", None])
    def test_malformed_flags_raise(self, value):
        with pytest.raises(MalformedComorbidityError):
            decode_comorbidity_flags(value)

    def test_malformed_error_is_value_error(self):
        assert issubclass(MalformedComorbidityError, ValueError)

    def test_retained_admission_is_matched(self):
        derived = construct_derived_features(self.patients, self.icu_stays, self.comorbidities)

        features = dict(zip(derived["patient_id"], derived["features"]))
        assert set(features) == {1, 2}, "Patient 3 has no comorbidity row"
        assert features[1].sum() == 1.0 and features[1][0] == 1.0
        assert features[2][29] == 1.0 and features[2].sum() == 1.0

    def test_matched_malformed_row_raises(self):
        comorbidities = self.comorbidities.copy()
        comorbidities.loc[2, "all_values"] = "01"

        with pytest.raises(MalformedComorbidityError):
            construct_derived_features(self.patients, self.icu_stays, comorbidities)

    def test_unmatched_malformed_row_is_ignored(self):
        comorbidities = self.comorbidities.copy()
        comorbidities.loc[1, "all_values"] = "01"

        derived = construct_derived_features(self.patients, self.icu_stays, comorbidities)

        assert sorted(derived["patient_id"]) == [1, 2]
