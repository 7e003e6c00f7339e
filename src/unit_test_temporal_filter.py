"""
Test suite for temporal_filter.py

Covers:
- Horizon <= 0 returns the inputs unchanged
- Strict discharge / death bounds against first_note_date + hours
- Missing dates of death
- Note chart times strictly before the cutoff
- Independent vs. joint filtering of notes
"""
import pandas as pd
import pytest

from icu_note_features.temporal_filter import (
    filter_all_on_hours_since_first_note,
    filter_data_and_notes_on_hours_since_first_note,
    filter_data_on_hours_since_first_note,
    filter_tokenized_notes_on_hours_since_first_note,
)

HOURS = 24


def _ts(s: str) -> pd.Timestamp:
    return pd.Timestamp(s)


class TestTemporalFilter:
    """All patients' first note is at 2150-01-01 00:00, so the 24h cutoff is 2150-01-02 00:00."""

    def setup_method(self):
        self.patients = pd.DataFrame({
            "patient_id": [1, 2, 3, 4, 5],
            "is_male": [1, 0, 1, 0, 1],
            "dob": [_ts("2100-01-01")] * 5,
            "is_dead": [0, 0, 1, 1, 0],
            "dod": [pd.NaT, pd.NaT, _ts("2150-01-02"), _ts("2150-01-02 01:00"), pd.NaT],
            "index_date": [pd.NaT] * 5,
            "age": [50.0] * 5,
        })
        self.icu_stays = pd.DataFrame({
            "patient_id": [1, 2, 3, 4, 5],
            "hadm_id": [10, 20, 30, 40, 50],
            "icustay_id": [100, 200, 300, 400, 500],
            "in_date": [_ts("2149-12-31")] * 5,
            "out_date": [
                _ts("2150-01-05"),      # kept
                _ts("2150-01-02"),      # discharged exactly at cutoff
                _ts("2150-01-05"),      # died exactly at cutoff
                _ts("2150-01-05"),      # died one hour after cutoff
                _ts("2150-01-05"),      # no first note date
            ],
        })
        self.first_note_dates = pd.DataFrame({
            "patient_id": [1, 2, 3, 4],
            "first_note_date": [_ts("2150-01-01")] * 4,
        })
        self.notes = pd.DataFrame({
            "patient_id": [1, 1, 1, 2],
            "hadm_id": [10, 10, 10, 20],
            "chart_date": [_ts("2150-01-01"), _ts("2150-01-01 23:59"), _ts("2150-01-02"), _ts("2150-01-01 06:00")],
            "text": ["first", "last before cutoff", "at cutoff", "discharged patient"],
        })

    def test_zero_horizon_returns_inputs(self):
        result = filter_all_on_hours_since_first_note(
            self.patients, self.icu_stays, self.notes, self.first_note_dates, 0)

        assert result[0] is self.patients
        assert result[1] is self.icu_stays
        assert result[2] is self.notes

    @pytest.mark.parametrize("hours", [0, -6])
    def test_non_positive_horizon_disables_every_variant(self, hours):
        patients, icu_stays = filter_data_on_hours_since_first_note(
            self.patients, self.icu_stays, self.first_note_dates, hours)
        tokenized = filter_tokenized_notes_on_hours_since_first_note(self.notes, self.first_note_dates, hours)

        assert patients is self.patients
        assert icu_stays is self.icu_stays
        assert tokenized is self.notes

    def test_patients_with_outcome_after_cutoff(self):
        patients, icu_stays = filter_data_on_hours_since_first_note(
            self.patients, self.icu_stays, self.first_note_dates, HOURS)

        assert sorted(patients["patient_id"]) == [1, 4]
        assert patients["patient_id"].tolist() == icu_stays["patient_id"].tolist()

    def test_kept_patients_satisfy_outcome_predicate(self):
        patients, icu_stays = filter_data_on_hours_since_first_note(
            self.patients, self.icu_stays, self.first_note_dates, HOURS)

        cutoff = _ts("2150-01-01") + pd.Timedelta(hours=HOURS)
        assert (icu_stays["out_date"] > cutoff).all()
        assert (patients["dod"].isna() | (patients["dod"] > cutoff)).all()

    def test_notes_filtered_independently(self):
        patients, _, notes = filter_data_and_notes_on_hours_since_first_note(
            self.patients, self.icu_stays, self.notes, self.first_note_dates, HOURS)

        assert sorted(patients["patient_id"]) == [1, 4]
        assert sorted(notes["text"]) == ["discharged patient", "first", "last before cutoff"]

    def test_notes_filtered_with_patients(self):
        _, _, notes = filter_all_on_hours_since_first_note(
            self.patients, self.icu_stays, self.notes, self.first_note_dates, HOURS)

        assert sorted(notes["text"]) == ["first", "last before cutoff"]
        assert list(notes.columns) == list(self.notes.columns)

    def test_tokenized_notes_before_cutoff(self):
        tokenized_notes = self.notes.drop(columns=["text"]).assign(tokens=[["aaaa"], ["bbbb"], ["cccc"], ["dddd"]])

        filtered = filter_tokenized_notes_on_hours_since_first_note(tokenized_notes, self.first_note_dates, HOURS)

        assert filtered["tokens"].tolist() == [["aaaa"], ["bbbb"], ["dddd"]]
        assert "cutoff" not in filtered.columns

    def test_longer_horizon_keeps_fewer_patients(self):
        short, _ = filter_data_on_hours_since_first_note(self.patients, self.icu_stays, self.first_note_dates, 12)
        long, _ = filter_data_on_hours_since_first_note(self.patients, self.icu_stays, self.first_note_dates, 48)

        assert set(long["patient_id"]) <= set(short["patient_id"])
        assert sorted(short["patient_id"]) == [1, 2, 3, 4]
        assert sorted(long["patient_id"]) == [1]
