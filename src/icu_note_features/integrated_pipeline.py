"""
Integrated Feature Pipeline for Note-Based ICU Mortality Prediction

This module chains all feature construction steps into one pipeline:
1. Cohort normalization (most recent ICU stay, adult patients)
2. Note restriction to the ICU stay, tokenization and first-note resolution
3. Mortality labels for the selected window
4. Temporal filtering to ``hours`` after the first note
5. Topic features (LDA), baseline features and comorbidity features
6. Assembly of dense and sparse labelled points

The MortalityFeaturePipeline keeps its configuration and the fitted topic
model, and can be pickled to reuse the same configuration later.
"""
import pickle
from typing import Dict, Iterable, Optional

import pandas as pd

from .cohort_data import process_raw_patients_and_icu_stays
from .feature_assembly import (
    combine_feature_arrays,
    construct_for_svm,
    construct_for_svm_sparse,
    to_training_matrix,
)
from .logging_utils import logger
from .note_data import MIN_TOKEN_COUNT, process_notes_and_calculate_start_dates
from .static_features import (
    construct_baseline_feature_arrays,
    construct_baseline_feature_tuples,
    construct_derived_features,
)
from .target_data import MortalityWindow, generate_label_tuples
from .temporal_filter import (
    filter_all_on_hours_since_first_note,
    filter_tokenized_notes_on_hours_since_first_note,
)
from .topic_features import (
    DEFAULT_NUM_ITERATIONS,
    DEFAULT_NUM_TOPICS,
    RANDOM_SEED,
    fit_retrospective_topic_model,
)

# Number of top terms logged per topic
TOPIC_TERMS_TO_LOG = 10


class MortalityFeaturePipeline:
    """
    End-to-end construction of note-based mortality features and labels.

    Attributes:
        hours (int): Observation horizon after the first note; <= 0 disables
                     temporal filtering
        num_topics (int): Number of LDA topics
        num_iterations (int): LDA iteration budget
        mortality_window (MortalityWindow): Outcome to label
        random_state (Optional[int]): Seed of the topic model
        n_jobs (Optional[int]): Parallel jobs used by the topic model
        min_token_count (int): Minimum ICU-note tokens per patient
        topic_model (Optional[TopicModel]): Topic model fitted by the last run
        feature_index (Dict[str, int]): Sparse feature-name index of the last run
    """

    def __init__(
        self,
        hours: int = 0,
        num_topics: int = DEFAULT_NUM_TOPICS,
        num_iterations: int = DEFAULT_NUM_ITERATIONS,
        mortality_window: MortalityWindow = MortalityWindow.IN_ICU,
        random_state: Optional[int] = RANDOM_SEED,
        n_jobs: Optional[int] = None,
        min_token_count: int = MIN_TOKEN_COUNT,
    ):
        self.hours = hours
        self.num_topics = num_topics
        self.num_iterations = num_iterations
        self.mortality_window = MortalityWindow(mortality_window)
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.min_token_count = min_token_count
        self.topic_model = None
        self.feature_index = {}

    def _topic_features(self, tokenized_notes: pd.DataFrame) -> pd.DataFrame:
        self.topic_model, topic_features = fit_retrospective_topic_model(
            tokenized_notes,
            num_iterations=self.num_iterations,
            k=self.num_topics,
            random_state=self.random_state,
            n_jobs=self.n_jobs,
        )
        if self.topic_model is not None:
            for i, terms in enumerate(self.topic_model.describe_topics(TOPIC_TERMS_TO_LOG)):
                logger.log_info(f"Topic {i}: " + ", ".join(term for term, _ in terms))
        return topic_features

    def run(self, tables: Dict[str, pd.DataFrame], stopwords: Iterable[str]) -> Dict[str, object]:
        """
        Build labels, feature tables and labelled points from the input tables.

        Args:
            tables (Dict[str, pd.DataFrame]): Input tables keyed by "patients",
                "icu_stays", "notes", "saps2s" and "comorbidities"
                (see ``data_extraction.extract_tables``)
            stopwords (Iterable[str]): Words excluded from the note tokens

        Returns:
            Dict[str, object]: Output tables and points:
                - labels, first_note_dates
                - baseline_features (dense), baseline_feature_tuples (sparse)
                - comorbidity_features, topic_features, combined_features
                - points, sparse_points (lists of LabeledPoint)
                - X, y (stacked dense points)
        """
        logger.log_start("MortalityFeaturePipeline.run")

        patients, icu_stays = process_raw_patients_and_icu_stays(tables["patients"], tables["icu_stays"])
        patients, icu_stays, notes, first_note_dates, tokenized_notes = process_notes_and_calculate_start_dates(
            patients, icu_stays, tables["notes"], stopwords, self.min_token_count)

        labels = generate_label_tuples(patients, icu_stays, self.mortality_window)

        patients, icu_stays, notes = filter_all_on_hours_since_first_note(
            patients, icu_stays, notes, first_note_dates, self.hours)
        tokenized_notes = tokenized_notes.merge(patients[["patient_id"]], on="patient_id", how="inner")
        tokenized_notes = filter_tokenized_notes_on_hours_since_first_note(tokenized_notes, first_note_dates, self.hours)

        topic_features = self._topic_features(tokenized_notes)
        baseline_features = construct_baseline_feature_arrays(patients, icu_stays, tables["saps2s"])
        baseline_feature_tuples = construct_baseline_feature_tuples(patients, icu_stays, tables["saps2s"])
        comorbidity_features = construct_derived_features(patients, icu_stays, tables["comorbidities"])

        combined_features = combine_feature_arrays(baseline_features, comorbidity_features, topic_features)
        points = construct_for_svm(combined_features, labels)
        sparse_points, self.feature_index = construct_for_svm_sparse(baseline_feature_tuples, labels)
        X, y = to_training_matrix(points)

        logger.log_end("MortalityFeaturePipeline.run")
        return {
            "labels": labels,
            "first_note_dates": first_note_dates,
            "baseline_features": baseline_features,
            "baseline_feature_tuples": baseline_feature_tuples,
            "comorbidity_features": comorbidity_features,
            "topic_features": topic_features,
            "combined_features": combined_features,
            "points": points,
            "sparse_points": sparse_points,
            "X": X,
            "y": y,
        }

    def save(self, filepath: str) -> None:
        """Pickle the pipeline, including the topic model of the last run."""
        logger.log_start("MortalityFeaturePipeline.save")
        with open(filepath, 'wb') as f:
            pickle.dump(self, f)
        logger.log_end("MortalityFeaturePipeline.save")

    @classmethod
    def load(cls, filepath: str) -> 'MortalityFeaturePipeline':
        """Load a pickled pipeline."""
        logger.log_start("MortalityFeaturePipeline.load")
        with open(filepath, 'rb') as f:
            pipeline = pickle.load(f)
        logger.log_end("MortalityFeaturePipeline.load")
        return pipeline
