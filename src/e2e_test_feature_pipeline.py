from typing import Any

import duckdb  # type: ignore
import numpy as np
import pandas as pd
import pytest

from icu_note_features.data_extraction import ELIXHAUSER_COLUMNS, extract_data, extract_tables
from icu_note_features.integrated_pipeline import MortalityFeaturePipeline
from icu_note_features.target_data import MortalityWindow

STOPWORDS = {"with"}
NUM_TOPICS = 2


def _ts(s: str) -> pd.Timestamp:

    return pd.Timestamp(s)


def _text(words: str, repeats: int) -> str:

    return " ".join([words] * repeats)


def create_mimic_tables(con: Any) -> None:

    # Minimal schemas with only the columns referenced in queries
    con.execute(
        """
        CREATE TABLE patients (
            subject_id INTEGER,
            gender VARCHAR,
            dob TIMESTAMP,
            dod TIMESTAMP,
            expire_flag INTEGER
        );
        """
    )

    con.execute(
        """
        CREATE TABLE icustays (
            subject_id INTEGER,
            hadm_id INTEGER,
            icustay_id INTEGER,
            intime TIMESTAMP,
            outtime TIMESTAMP
        );
        """
    )

    con.execute(
        """
        CREATE TABLE noteevents (
            subject_id INTEGER,
            hadm_id INTEGER,
            chartdate TIMESTAMP,
            charttime TIMESTAMP,
            text VARCHAR,
            iserror VARCHAR
        );
        """
    )

    con.execute(
        """
        CREATE TABLE sapsii (
            subject_id INTEGER,
            hadm_id INTEGER,
            icustay_id INTEGER,
            sapsii INTEGER
        );
        """
    )

    flag_columns = ",\n".join(f"{col} INTEGER" for col in ELIXHAUSER_COLUMNS)
    con.execute(
        f"""
        CREATE TABLE elixhauser_ahrq (
            subject_id INTEGER,
            hadm_id INTEGER,
            {flag_columns}
        );
        """
    )


def seed_synthetic_data(con: Any) -> None:

    # Subject 1: dies 10 days after ICU discharge
    # Subject 2: survives
    # Subject 3: too few note tokens
    # Subject 4: discharged before the 24h horizon
    # Subject 5: minor
    patients_df = pd.DataFrame(
        [
            {"subject_id": 1, "gender": "M", "dob": _ts("2100-01-01"), "dod": _ts("2150-01-20"), "expire_flag": 1},
            {"subject_id": 2, "gender": "F", "dob": _ts("2090-01-01"), "dod": pd.NaT, "expire_flag": 0},
            {"subject_id": 3, "gender": "M", "dob": _ts("2100-01-01"), "dod": pd.NaT, "expire_flag": 0},
            {"subject_id": 4, "gender": "F", "dob": _ts("2100-01-01"), "dod": pd.NaT, "expire_flag": 0},
            {"subject_id": 5, "gender": "M", "dob": _ts("2140-01-01"), "dod": pd.NaT, "expire_flag": 0},
        ]
    )
    con.register("patients_df", patients_df)
    con.execute("INSERT INTO patients SELECT * FROM patients_df")

    icu_df = pd.DataFrame(
        [
            {"subject_id": 1, "hadm_id": 9, "icustay_id": 90, "intime": _ts("2149-01-01"), "outtime": _ts("2149-01-05")},
            {"subject_id": 1, "hadm_id": 10, "icustay_id": 100, "intime": _ts("2150-01-01"), "outtime": _ts("2150-01-10")},
            {"subject_id": 2, "hadm_id": 20, "icustay_id": 200, "intime": _ts("2150-02-01"), "outtime": _ts("2150-02-08")},
            {"subject_id": 3, "hadm_id": 30, "icustay_id": 300, "intime": _ts("2150-03-01"), "outtime": _ts("2150-03-05")},
            {"subject_id": 4, "hadm_id": 40, "icustay_id": 400, "intime": _ts("2150-04-01"), "outtime": _ts("2150-04-01 20:00")},
            {"subject_id": 5, "hadm_id": 50, "icustay_id": 500, "intime": _ts("2150-05-01"), "outtime": _ts("2150-05-04")},
        ]
    )
    con.register("icu_df", icu_df)
    con.execute("INSERT INTO icustays SELECT * FROM icu_df")

    notes_df = pd.DataFrame(
        [
            {"subject_id": 1, "hadm_id": 9, "charttime": _ts("2149-01-02"), "text": _text("old admission note", 40)},
            {"subject_id": 1, "hadm_id": 10, "charttime": _ts("2150-01-01 06:00"),
             "text": _text("Sepsis with shock; lactate rising, pressors started.", 20)},
            {"subject_id": 1, "hadm_id": 10, "charttime": _ts("2150-01-03 09:00"), "text": "hypotension persists"},
            {"subject_id": 2, "hadm_id": 20, "charttime": _ts("2150-02-01 08:00"),
             "text": _text("stable, ambulating; discharge planning", 40)},
            {"subject_id": 3, "hadm_id": 30, "charttime": _ts("2150-03-01 08:00"), "text": _text("brief note", 10)},
            {"subject_id": 4, "hadm_id": 40, "charttime": _ts("2150-04-01 06:00"),
             "text": _text("chest pain troponin negative", 30)},
            {"subject_id": 5, "hadm_id": 50, "charttime": _ts("2150-05-01 06:00"),
             "text": _text("asthma nebulizer wheezing", 40)},
        ]
    )
    notes_df["chartdate"] = notes_df["charttime"].dt.normalize()
    con.register("notes_df", notes_df)
    con.execute(
        """
        INSERT INTO noteevents (subject_id, hadm_id, chartdate, charttime, text)
        SELECT subject_id, hadm_id, chartdate, charttime, text FROM notes_df
        """
    )
    # Erroneous and unlinked notes are never loaded
    con.execute(
        """
        INSERT INTO noteevents VALUES
            (2, 20, TIMESTAMP '2150-02-01', TIMESTAMP '2150-02-01 07:00', 'erroneous entry', '1'),
            (2, NULL, TIMESTAMP '2150-02-01', TIMESTAMP '2150-02-01 07:30', 'unlinked outpatient letter', NULL)
        """
    )

    saps_df = pd.DataFrame(
        [
            {"subject_id": 1, "hadm_id": 10, "icustay_id": 100, "sapsii": 52},
            {"subject_id": 2, "hadm_id": 20, "icustay_id": 200, "sapsii": 30},
            {"subject_id": 4, "hadm_id": 40, "icustay_id": 400, "sapsii": 20},
        ]
    )
    con.register("saps_df", saps_df)
    con.execute("INSERT INTO sapsii SELECT * FROM saps_df")

    def flags(subject_id: int, hadm_id: int, *present: str) -> dict:
        row = {"subject_id": subject_id, "hadm_id": hadm_id}
        row.update({col: int(col in present) for col in ELIXHAUSER_COLUMNS})
        return row

    elix_df = pd.DataFrame(
        [
            flags(1, 9, *ELIXHAUSER_COLUMNS),
            flags(1, 10, "congestive_heart_failure", "hypertension"),
            flags(2, 20, "depression"),
            flags(4, 40),
        ]
    )
    con.register("elix_df", elix_df)
    con.execute("INSERT INTO elixhauser_ahrq SELECT * FROM elix_df")


def create_in_memory_mimic() -> Any:

    con = duckdb.connect(database=":memory:")
    create_mimic_tables(con)
    seed_synthetic_data(con)
    return con


class TestExtraction:
    """Loading the pipeline's input tables from DuckDB."""

    def setup_method(self):
        self.con = create_in_memory_mimic()

    def teardown_method(self):
        self.con.close()

    def test_tables_and_schemas(self):
        tables = extract_tables(self.con)

        assert set(tables) == {"patients", "icu_stays", "notes", "saps2s", "comorbidities"}
        assert list(tables["patients"].columns) == ["patient_id", "is_male", "dob", "is_dead", "dod", "index_date"]
        assert list(tables["icu_stays"].columns) == ["patient_id", "hadm_id", "icustay_id", "in_date", "out_date"]
        assert list(tables["notes"].columns) == ["patient_id", "hadm_id", "chart_date", "text"]
        assert list(tables["saps2s"].columns) == ["patient_id", "hadm_id", "icustay_id", "score"]
        assert list(tables["comorbidities"].columns) == ["patient_id", "hadm_id", "all_values"]

    def test_patient_columns_are_translated(self):
        patients = extract_tables(self.con)["patients"].set_index("patient_id")

        assert patients.loc[1, "is_male"] == 1 and patients.loc[2, "is_male"] == 0
        assert patients.loc[1, "is_dead"] == 1
        assert pd.isna(patients.loc[2, "dod"])

    def test_erroneous_and_unlinked_notes_are_dropped(self):
        notes = extract_tables(self.con)["notes"]

        assert len(notes) == 7
        assert not notes["text"].str.contains("erroneous|unlinked").any()

    def test_comorbidity_flag_string(self):
        comorbidities = extract_tables(self.con)["comorbidities"]

        flags = comorbidities.set_index("hadm_id")["all_values"]
        assert flags[10] == "100001" + "0" * 24
        assert flags[9] == "1" * 30
        assert all(len(value) == len(ELIXHAUSER_COLUMNS) for value in flags)

    def test_subject_filter(self):
        tables = extract_tables(self.con, subject_ids=[1, 2])

        for name, table in tables.items():
            assert set(table["patient_id"]) == {1, 2}, name

    def test_extract_data_from_file(self, tmp_path):
        path = str(tmp_path / "mimic.duckdb")
        con = duckdb.connect(path)
        create_mimic_tables(con)
        seed_synthetic_data(con)
        con.close()

        tables = extract_data(path, subject_ids=[4])

        assert tables["icu_stays"]["hadm_id"].tolist() == [40]
        assert tables["saps2s"]["score"].tolist() == [20.0]


class TestFeaturePipeline:
    """Full pipeline on the synthetic database with a 24h horizon."""

    def setup_method(self):
        con = create_in_memory_mimic()
        try:
            self.tables = extract_tables(con)
        finally:
            con.close()
        self.pipeline = MortalityFeaturePipeline(
            hours=24,
            num_topics=NUM_TOPICS,
            num_iterations=5,
            mortality_window=MortalityWindow.IN_30_DAYS,
        )
        self.outputs = self.pipeline.run(self.tables, STOPWORDS)

    def test_labels_before_temporal_filter(self):
        labels = self.outputs["labels"]

        assert dict(zip(labels["patient_id"], labels["label"])) == {1: 1, 2: 0, 4: 0}

    def test_first_note_dates(self):
        dates = self.outputs["first_note_dates"].set_index("patient_id")["first_note_date"]

        assert dates[1] == _ts("2150-01-01 06:00")
        assert dates[2] == _ts("2150-02-01 08:00")
        assert 3 not in dates.index and 5 not in dates.index

    def test_features_only_for_patients_past_horizon(self):
        for name in ["baseline_features", "comorbidity_features", "topic_features", "combined_features"]:
            assert sorted(self.outputs[name]["patient_id"]) == [1, 2], name

    def test_baseline_features(self):
        features = dict(zip(self.outputs["baseline_features"]["patient_id"], self.outputs["baseline_features"]["features"]))

        age = (_ts("2150-01-01") - _ts("2100-01-01")) / pd.Timedelta(days=365)
        np.testing.assert_allclose(features[1], [age / 89, 1.0, 52 / 163])

    def test_comorbidity_features_use_retained_admission(self):
        derived = self.outputs["comorbidity_features"]
        features = dict(zip(derived["patient_id"], derived["features"]))

        assert features[1].sum() == 2.0
        assert features[1][ELIXHAUSER_COLUMNS.index("hypertension")] == 1.0
        assert features[2][ELIXHAUSER_COLUMNS.index("depression")] == 1.0

    def test_topic_features_are_distributions(self):
        for vector in self.outputs["topic_features"]["features"]:
            assert vector.shape == (NUM_TOPICS,)
            assert vector.sum() == pytest.approx(1.0)

    def test_training_matrix(self):
        X, y = self.outputs["X"], self.outputs["y"]

        assert X.shape == (2, 3 + len(ELIXHAUSER_COLUMNS) + NUM_TOPICS)
        assert sorted(y.tolist()) == [0.0, 1.0]
        assert len(self.outputs["points"]) == 2

    def test_sparse_points(self):
        assert len(self.outputs["sparse_points"]) == 2
        assert self.pipeline.feature_index == {"patient_age": 0, "patient_sex": 1, "saps_score": 2}

    def test_topic_model_only_sees_notes_before_cutoff(self):
        assert "hypotension" not in self.pipeline.topic_model.vocabulary_terms
        assert "sepsis" in self.pipeline.topic_model.vocabulary_terms
        assert "with" not in self.pipeline.topic_model.vocabulary_terms

    def test_save_and_load(self, tmp_path):
        path = str(tmp_path / "pipeline.pkl")

        self.pipeline.save(path)
        loaded = MortalityFeaturePipeline.load(path)

        assert loaded.hours == 24
        assert loaded.mortality_window is MortalityWindow.IN_30_DAYS
        assert loaded.topic_model.num_topics == NUM_TOPICS

    def test_without_horizon_keeps_short_stays(self):
        pipeline = MortalityFeaturePipeline(hours=0, num_topics=NUM_TOPICS, num_iterations=5)

        outputs = pipeline.run(self.tables, STOPWORDS)

        assert sorted(outputs["combined_features"]["patient_id"]) == [1, 2, 4]
