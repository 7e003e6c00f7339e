"""
Test suite for cohort_data.py and note_data.py

Covers:
- Most recent ICU stay selection and age computation (top-coding, minors)
- Inner-join exclusion of patients / ICU stays without a partner
- Note tokenization
- Restriction of notes to the ICU stay and before death
- Minimum token filter and first note dates
"""
from typing import List, Optional

import pandas as pd
import pytest

from icu_note_features.cohort_data import (
    AGE_TOP_CODE_SENTINEL,
    MAX_AGE,
    MIN_AGE,
    calculate_admission_age,
    filter_out_patient_icu_without_first_note,
    process_raw_patients_and_icu_stays,
)
from icu_note_features.note_data import (
    MIN_TOKEN_COUNT,
    filter_special_characters,
    load_stopwords,
    process_notes_and_calculate_start_dates,
    tokenize_note_text,
)


def _ts(s: str) -> pd.Timestamp:
    """Helper to create timestamps."""
    return pd.Timestamp(s)


def _patient(patient_id: int, dob: str, dod: Optional[str] = None, is_male: int = 1, age: float = 60.0) -> dict:
    return {
        "patient_id": patient_id,
        "is_male": is_male,
        "dob": _ts(dob),
        "is_dead": int(dod is not None),
        "dod": _ts(dod) if dod else pd.NaT,
        "index_date": pd.NaT,
        "age": age,
    }


def _icu_stay(patient_id: int, hadm_id: int, icustay_id: int, in_date: str, out_date: str) -> dict:
    return {
        "patient_id": patient_id,
        "hadm_id": hadm_id,
        "icustay_id": icustay_id,
        "in_date": _ts(in_date),
        "out_date": _ts(out_date),
    }


def _note(patient_id: int, hadm_id: int, chart_date: str, text: str) -> dict:
    return {"patient_id": patient_id, "hadm_id": hadm_id, "chart_date": _ts(chart_date), "text": text}


def _words(n: int, word: str = "pneumonia") -> str:
    return " ".join([word] * n)


class TestCohortNormalization:
    """Tests for process_raw_patients_and_icu_stays."""

    def setup_method(self):
        patients: List[dict] = [
            _patient(1, "2100-01-01"),
            _patient(2, "2140-01-01"),                 # minor at admission
            _patient(3, "1850-01-01"),                 # top-coded age (~300)
            _patient(4, "2100-01-01"),                 # no ICU stay
            _patient(6, "2132-01-01"),                 # exactly 18 years at admission
        ]
        self.patients = pd.DataFrame(patients).drop(columns=["age"])
        self.icu_stays = pd.DataFrame([
            _icu_stay(1, 10, 100, "2150-01-01", "2150-01-05"),
            _icu_stay(1, 11, 101, "2151-01-01", "2151-01-03"),   # most recent discharge
            _icu_stay(1, 12, 102, "2149-01-01", "2149-01-09"),
            _icu_stay(2, 20, 200, "2150-01-01", "2150-01-02"),
            _icu_stay(3, 30, 300, "2150-06-01", "2150-06-04"),
            _icu_stay(5, 50, 500, "2150-01-01", "2150-01-02"),   # no patient record
            _icu_stay(6, 60, 600, "2150-01-01", "2150-01-02"),
        ])
        # 18 years of 365 days, ignoring leap days, lands exactly on MIN_AGE
        self.icu_stays.loc[self.icu_stays["patient_id"] == 6, "in_date"] = (
            _ts("2132-01-01") + pd.Timedelta(days=365 * MIN_AGE)
        )

    def test_constants_are_correct(self):
        assert MIN_AGE == 18
        assert MAX_AGE == 89
        assert AGE_TOP_CODE_SENTINEL == 300
        assert MIN_TOKEN_COUNT == 100

    def test_cohort_membership(self):
        patients, icu_stays = process_raw_patients_and_icu_stays(self.patients, self.icu_stays)

        assert set(patients["patient_id"]) == {1, 3, 6}, "Minors and unmatched records must be dropped"
        assert patients["patient_id"].tolist() == icu_stays["patient_id"].tolist(), "Outputs must be aligned"

    def test_most_recent_icu_stay_is_kept(self):
        _, icu_stays = process_raw_patients_and_icu_stays(self.patients, self.icu_stays)

        assert (icu_stays["patient_id"] == 1).sum() == 1
        assert icu_stays.loc[icu_stays["patient_id"] == 1, "hadm_id"].item() == 11

    def test_age_is_computed_from_admission(self):
        patients, _ = process_raw_patients_and_icu_stays(self.patients, self.icu_stays)

        expected = (_ts("2151-01-01") - _ts("2100-01-01")) / pd.Timedelta(days=365)
        assert patients.loc[patients["patient_id"] == 1, "age"].item() == pytest.approx(expected)

    def test_age_top_coding(self):
        patients, _ = process_raw_patients_and_icu_stays(self.patients, self.icu_stays)

        assert patients.loc[patients["patient_id"] == 3, "age"].item() == 89.0

    def test_age_boundary_is_inclusive(self):
        patients, _ = process_raw_patients_and_icu_stays(self.patients, self.icu_stays)

        assert patients.loc[patients["patient_id"] == 6, "age"].item() == pytest.approx(18.0)

    def test_calculate_admission_age_at_sentinel(self):
        in_date = pd.Series([_ts("2150-01-01")])
        dob = pd.Series([_ts("2150-01-01") - pd.Timedelta(days=365 * AGE_TOP_CODE_SENTINEL)])

        assert calculate_admission_age(in_date, dob).tolist() == [89.0]

    def test_top_coding_with_nanosecond_timestamps(self):
        patients = self.patients.astype({"dob": "datetime64[ns]", "dod": "datetime64[ns]"})
        icu_stays = self.icu_stays.astype({"in_date": "datetime64[ns]", "out_date": "datetime64[ns]"})

        result, _ = process_raw_patients_and_icu_stays(patients, icu_stays)

        assert result.loc[result["patient_id"] == 3, "age"].tolist() == [89.0]
        assert result.loc[result["patient_id"] == 6, "age"].item() == pytest.approx(18.0)

    def test_inputs_are_not_mutated(self):
        patients_before = self.patients.copy()
        icu_before = self.icu_stays.copy()

        process_raw_patients_and_icu_stays(self.patients, self.icu_stays)

        pd.testing.assert_frame_equal(self.patients, patients_before)
        pd.testing.assert_frame_equal(self.icu_stays, icu_before)

    def test_empty_inputs(self):
        patients, icu_stays = process_raw_patients_and_icu_stays(self.patients.iloc[0:0], self.icu_stays.iloc[0:0])

        assert patients.empty
        assert icu_stays.empty

    def test_filter_out_patient_icu_without_first_note(self):
        patients, icu_stays = process_raw_patients_and_icu_stays(self.patients, self.icu_stays)
        first_note_dates = pd.DataFrame({"patient_id": [3], "first_note_date": [_ts("2150-06-02")]})

        filtered_patients, filtered_icu_stays = filter_out_patient_icu_without_first_note(
            patients, icu_stays, first_note_dates)

        assert filtered_patients["patient_id"].tolist() == [3]
        assert filtered_icu_stays["hadm_id"].tolist() == [30]


class TestTokenization:
    """Tests for note text cleaning and tokenization."""

    def test_punctuation_is_replaced(self):
        assert filter_special_characters("sepsis, shock.") == "sepsis  shock "

    def test_words_with_digits_are_dropped(self):
        tokens = tokenize_note_text("Given 120mg furosemide x2 overnight", set())

        assert tokens == ["given", "furosemide", "overnight"]

    def test_punctuation_splits_words(self):
        assert tokenize_note_text("sepsis/shock;fever", set()) == ["sepsis", "shock", "fever"]

    def test_short_tokens_and_stopwords_are_dropped(self):
        tokens = tokenize_note_text("Patient with a bad cough THIS morning", {"with", "this"})

        assert tokens == ["patient", "cough", "morning"]

    def test_non_text_gives_no_tokens(self):
        assert tokenize_note_text(None, set()) == []

    def test_load_stopwords(self, tmp_path):
        path = tmp_path / "stopwords.txt"
        path.write_text("With\nthis\n\n  were \n", encoding="utf-8")

        assert load_stopwords(str(path)) == frozenset({"with", "this", "were"})


class TestFirstNoteResolution:
    """Tests for process_notes_and_calculate_start_dates."""

    def setup_method(self):
        self.patients = pd.DataFrame([
            _patient(1, "2100-01-01"),
            _patient(2, "2100-01-01"),
            _patient(3, "2100-01-01", dod="2150-01-03"),
            _patient(4, "2100-01-01"),
        ])
        self.icu_stays = pd.DataFrame([
            _icu_stay(1, 10, 100, "2150-01-01", "2150-01-10"),
            _icu_stay(2, 20, 200, "2150-01-01", "2150-01-10"),
            _icu_stay(3, 30, 300, "2150-01-01", "2150-01-10"),
            _icu_stay(4, 40, 400, "2150-01-01", "2150-01-10"),
        ])
        self.notes = pd.DataFrame([
            # Patient 1: exactly 100 tokens inside the stay
            _note(1, 10, "2150-01-02 00:00", _words(60)),
            _note(1, 10, "2150-01-01 12:00", _words(40, "sepsis")),
            _note(1, 10, "2149-12-31 00:00", _words(200)),        # before admission
            _note(1, 10, "2150-01-10 00:00", _words(200)),        # at discharge
            _note(1, 99, "2150-01-01 06:00", _words(200)),        # other admission
            # Patient 2: 99 tokens plus stopwords
            _note(2, 20, "2150-01-02 00:00", _words(99) + " " + _words(50, "with")),
            # Patient 3: notes after or at death do not count
            _note(3, 30, "2150-01-02 00:00", _words(100)),
            _note(3, 30, "2150-01-03 00:00", _words(100)),
            _note(3, 30, "2150-01-04 00:00", _words(100)),
            # Patient 4 has no notes
        ])
        self.stopwords = {"with"}

    def test_minimum_token_boundary(self):
        patients, icu_stays, _, first_note_dates, _ = process_notes_and_calculate_start_dates(
            self.patients, self.icu_stays, self.notes, self.stopwords)

        assert set(patients["patient_id"]) == {1, 3}, "99 tokens must be excluded, 100 included"
        assert set(icu_stays["patient_id"]) == {1, 3}
        assert set(first_note_dates["patient_id"]) == {1, 3}

    def test_first_note_date_is_earliest_note_in_icu(self):
        _, _, _, first_note_dates, _ = process_notes_and_calculate_start_dates(
            self.patients, self.icu_stays, self.notes, self.stopwords)

        dates = first_note_dates.set_index("patient_id")["first_note_date"]
        assert dates[1] == _ts("2150-01-01 12:00")
        assert dates[3] == _ts("2150-01-02 00:00")

    def test_notes_are_restricted_to_icu_stay_and_before_death(self):
        _, _, notes, _, tokenized_notes = process_notes_and_calculate_start_dates(
            self.patients, self.icu_stays, self.notes, self.stopwords)

        assert sorted(notes.loc[notes["patient_id"] == 1, "chart_date"].tolist()) == [
            _ts("2150-01-01 12:00"), _ts("2150-01-02 00:00")]
        assert notes.loc[notes["patient_id"] == 3, "chart_date"].tolist() == [_ts("2150-01-02 00:00")]
        assert len(tokenized_notes) == len(notes)

    def test_every_patient_has_enough_tokens(self):
        patients, _, _, _, tokenized_notes = process_notes_and_calculate_start_dates(
            self.patients, self.icu_stays, self.notes, self.stopwords)

        totals = tokenized_notes.assign(n=tokenized_notes["tokens"].map(len)).groupby("patient_id")["n"].sum()
        assert set(totals.index) == set(patients["patient_id"])
        assert (totals >= MIN_TOKEN_COUNT).all()

    def test_stopwords_are_removed_from_tokens(self):
        _, _, _, _, tokenized_notes = process_notes_and_calculate_start_dates(
            self.patients, self.icu_stays, self.notes, self.stopwords)

        all_tokens = {token for tokens in tokenized_notes["tokens"] for token in tokens}
        assert all_tokens == {"pneumonia", "sepsis"}

    def test_no_notes_gives_empty_outputs(self):
        patients, icu_stays, notes, first_note_dates, tokenized_notes = process_notes_and_calculate_start_dates(
            self.patients, self.icu_stays, self.notes.iloc[0:0], self.stopwords)

        assert patients.empty
        assert icu_stays.empty
        assert notes.empty
        assert first_note_dates.empty
        assert tokenized_notes.empty
