"""
Test suite for topic_features.py and feature_assembly.py

Covers:
- Vocabulary and term-frequency matrix construction
- Per-patient averaging of topic distributions
- LDA topic features on a small corpus, empty notes and non-finite output
- Read-only shared lookup tables
- Dense / sparse labelled point assembly
"""
import numpy as np
import pandas as pd
import pytest
from scipy.sparse import csr_matrix
from sklearn.decomposition import LatentDirichletAllocation

from icu_note_features.feature_assembly import (
    LabeledPoint,
    build_feature_index,
    combine_feature_arrays,
    construct_for_svm,
    construct_for_svm_sparse,
    construct_sparse_feature_vectors,
    to_training_matrix,
)
from icu_note_features.logging_utils import logger
from icu_note_features.topic_features import (
    TopicModel,
    TopicModelConvergenceError,
    aggregate_topic_distributions,
    build_vocabulary,
    fit_retrospective_topic_model,
    fit_topic_model,
    retrospective_topic_model,
    to_term_frequency_matrix,
)
from icu_note_features.utils import object_column, shared_lookup

NUM_TOPICS = 2


def _tokenized_notes(rows) -> pd.DataFrame:
    return pd.DataFrame({
        "patient_id": [patient_id for patient_id, _ in rows],
        "hadm_id": [patient_id * 10 for patient_id, _ in rows],
        "chart_date": [pd.Timestamp("2150-01-01")] * len(rows),
        "tokens": object_column(tokens for _, tokens in rows),
    })


def _feature_arrays(features: dict) -> pd.DataFrame:
    return pd.DataFrame({
        "patient_id": list(features),
        "features": object_column(np.asarray(v, dtype=float) for v in features.values()),
    })


class TestVocabulary:
    """Tests for build_vocabulary and to_term_frequency_matrix."""

    def setup_method(self):
        self.notes = _tokenized_notes([
            (1, ["sepsis", "shock", "sepsis"]),
            (2, ["fever"]),
            (2, []),
        ])

    def test_vocabulary_is_sorted_and_dense(self):
        vocabulary = build_vocabulary(self.notes)

        assert vocabulary == {"fever": 0, "sepsis": 1, "shock": 2}

    def test_term_frequency_counts(self):
        vocabulary = build_vocabulary(self.notes)

        matrix = to_term_frequency_matrix(self.notes, vocabulary)

        assert isinstance(matrix, csr_matrix)
        assert matrix.shape == (3, 3)
        np.testing.assert_array_equal(matrix.toarray(), [[0, 2, 1], [1, 0, 0], [0, 0, 0]])

    def test_empty_corpus_gives_empty_vocabulary(self):
        notes = _tokenized_notes([(1, []), (2, [])])

        assert build_vocabulary(notes) == {}
        assert build_vocabulary(notes.iloc[0:0]) == {}
        assert to_term_frequency_matrix(notes, {}).shape == (2, 0)

    def test_unknown_tokens_are_ignored(self):
        matrix = to_term_frequency_matrix(self.notes, {"sepsis": 0})

        np.testing.assert_array_equal(matrix.toarray(), [[2], [0], [0]])


class TestTopicAggregation:
    """Tests for aggregate_topic_distributions."""

    def test_mean_of_patient_documents(self):
        result = aggregate_topic_distributions(["p1", "p1"], np.array([[1.0, 0.0], [0.0, 1.0]]))

        assert result["patient_id"].tolist() == ["p1"]
        np.testing.assert_allclose(result["features"][0], [0.5, 0.5])

    def test_each_document_has_equal_weight(self):
        distributions = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.2, 0.8]])

        result = aggregate_topic_distributions([7, 7, 7, 3], distributions)

        features = dict(zip(result["patient_id"], result["features"]))
        np.testing.assert_allclose(features[7], [2 / 3, 1 / 3])
        np.testing.assert_allclose(features[3], [0.2, 0.8])

    def test_no_documents(self):
        result = aggregate_topic_distributions([], np.empty((0, NUM_TOPICS)))

        assert result.empty
        assert list(result.columns) == ["patient_id", "features"]


class TestRetrospectiveTopicModel:
    """Tests for fit_topic_model / retrospective_topic_model on a tiny corpus."""

    def setup_method(self):
        cardiac = ["heart", "failure", "troponin", "murmur"] * 5
        respiratory = ["ventilator", "intubated", "sputum", "pneumonia"] * 5
        self.notes = _tokenized_notes([
            (1, cardiac),
            (1, cardiac[:8]),
            (2, respiratory),
            (3, cardiac[:4] + respiratory[:4]),
        ])

    def test_one_vector_per_patient(self):
        features = retrospective_topic_model(self.notes, num_iterations=10, k=NUM_TOPICS)

        assert features["patient_id"].tolist() == [1, 2, 3]
        for vector in features["features"]:
            assert vector.shape == (NUM_TOPICS,)
            assert np.all(vector >= 0.0)
            assert vector.sum() == pytest.approx(1.0)

    def test_fixed_seed_is_reproducible(self):
        first = retrospective_topic_model(self.notes, num_iterations=10, k=NUM_TOPICS, random_state=7)
        second = retrospective_topic_model(self.notes, num_iterations=10, k=NUM_TOPICS, random_state=7)

        for a, b in zip(first["features"], second["features"]):
            np.testing.assert_allclose(a, b)

    def test_patients_without_notes_are_absent(self):
        features = retrospective_topic_model(self.notes[self.notes["patient_id"] != 2], num_iterations=5, k=NUM_TOPICS)

        assert 2 not in set(features["patient_id"])

    def test_fitted_model_describes_topics(self):
        model, distributions = fit_topic_model(self.notes, num_iterations=5, k=NUM_TOPICS)

        assert isinstance(model, TopicModel)
        assert model.num_topics == NUM_TOPICS
        assert distributions.shape == (len(self.notes), NUM_TOPICS)
        np.testing.assert_allclose(model.topic_term_weights.sum(axis=1), 1.0)

        topics = model.describe_topics(max_terms_per_topic=3)
        assert len(topics) == NUM_TOPICS
        assert all(len(terms) == 3 for terms in topics)
        assert all(term in model.vocabulary_terms for terms in topics for term, _ in terms)

    def test_empty_corpus(self):
        features = retrospective_topic_model(self.notes.iloc[0:0], num_iterations=5, k=NUM_TOPICS)

        assert features.empty

    def test_empty_notes_are_left_out(self):
        with_empty_notes = pd.concat(
            [self.notes, _tokenized_notes([(1, []), (4, [])])], ignore_index=True)

        features = retrospective_topic_model(with_empty_notes, num_iterations=10, k=NUM_TOPICS)
        expected = retrospective_topic_model(self.notes, num_iterations=10, k=NUM_TOPICS)

        assert features["patient_id"].tolist() == [1, 2, 3], "Patient 4 only has an empty note"
        for actual, reference in zip(features["features"], expected["features"]):
            np.testing.assert_allclose(actual, reference)

    def test_fit_retrospective_topic_model_returns_model(self):
        model, features = fit_retrospective_topic_model(self.notes, num_iterations=5, k=NUM_TOPICS)

        assert model.num_topics == NUM_TOPICS
        assert features["patient_id"].tolist() == [1, 2, 3]

    def test_non_finite_distributions_raise(self, monkeypatch):
        def nan_fit_transform(lda, documents, y=None):
            return np.full((documents.shape[0], lda.n_components), np.nan)

        monkeypatch.setattr(LatentDirichletAllocation, "fit_transform", nan_fit_transform)
        nesting_level = logger._nesting_level

        with pytest.raises(TopicModelConvergenceError):
            retrospective_topic_model(self.notes, num_iterations=5, k=NUM_TOPICS)

        assert issubclass(TopicModelConvergenceError, RuntimeError)
        assert logger._nesting_level == nesting_level

    def test_corpus_without_tokens(self):
        model, distributions = fit_topic_model(_tokenized_notes([(1, []), (2, [])]), k=NUM_TOPICS)

        assert model is None
        assert distributions.shape == (0, NUM_TOPICS)


class TestSharedLookup:
    """Tests for the shared_lookup context manager."""

    def test_mapping_view_is_read_only(self):
        with shared_lookup({"sepsis": 0}) as vocab:
            assert vocab["sepsis"] == 0
            with pytest.raises(TypeError):
                vocab["shock"] = 1

    def test_iterable_supports_membership(self):
        with shared_lookup(word.lower() for word in ["With", "this"]) as stopwords:
            assert "with" in stopwords
            assert "sepsis" not in stopwords

    def test_view_is_released_on_exit(self):
        table = {"sepsis": 0}

        with shared_lookup(table) as vocab:
            escaped = vocab

        assert len(escaped) == 0
        assert table == {"sepsis": 0}, "The caller's table is not touched"


class TestFeatureAssembly:
    """Tests for feature_assembly.py."""

    def setup_method(self):
        self.baseline = _feature_arrays({1: [0.5, 1.0, 0.2], 2: [0.7, 0.0, 0.4], 3: [0.3, 1.0, 0.9]})
        self.topics = _feature_arrays({2: [0.25, 0.75], 1: [0.5, 0.5]})
        self.labels = pd.DataFrame({"patient_id": [1, 2, 4], "label": [1, 0, 1]})
        self.tuples = pd.DataFrame({
            "patient_id": [1, 1, 1, 2, 2],
            "feature_name": ["patient_age", "Patient_Sex", "saps_score", "patient_age", "saps_score"],
            "value": [0.5, 1.0, 0.2, 0.7, 0.4],
        })

    def test_combine_is_inner_and_ordered(self):
        combined = combine_feature_arrays(self.baseline, self.topics)

        features = dict(zip(combined["patient_id"], combined["features"]))
        assert set(features) == {1, 2}
        np.testing.assert_allclose(features[2], [0.7, 0.0, 0.4, 0.25, 0.75])

    def test_combined_width_is_sum_of_widths(self):
        combined = combine_feature_arrays(self.baseline, self.topics, self.topics)

        assert all(len(vector) == 3 + 2 + 2 for vector in combined["features"])

    def test_dense_points_join_labels(self):
        points = construct_for_svm(self.baseline, self.labels)

        assert len(points) == 2, "Patient 3 has no label and patient 4 no features"
        assert all(isinstance(point, LabeledPoint) for point in points)
        assert sorted(point.label for point in points) == [0.0, 1.0]

    def test_feature_index_is_lowercased_and_sorted(self):
        assert build_feature_index(self.tuples) == {"patient_age": 0, "patient_sex": 1, "saps_score": 2}

    def test_sparse_vectors_match_dense(self):
        feature_index = build_feature_index(self.tuples)

        vectors = construct_sparse_feature_vectors(self.tuples, feature_index)

        features = dict(zip(vectors["patient_id"], vectors["features"]))
        assert features[1].shape == (1, 3)
        np.testing.assert_allclose(features[1].toarray().ravel(), [0.5, 1.0, 0.2])
        np.testing.assert_allclose(features[2].toarray().ravel(), [0.7, 0.0, 0.4])
        assert features[2].nnz == 2

    def test_sparse_points(self):
        points, feature_index = construct_for_svm_sparse(self.tuples, self.labels)

        assert len(points) == 2
        assert len(feature_index) == 3
        assert all(point.features.shape == (1, len(feature_index)) for point in points)

    def test_training_matrix_dense(self):
        X, y = to_training_matrix(construct_for_svm(combine_feature_arrays(self.baseline, self.topics), self.labels))

        assert X.shape == (2, 5)
        assert y.shape == (2,)

    def test_training_matrix_sparse(self):
        points, _ = construct_for_svm_sparse(self.tuples, self.labels)

        X, y = to_training_matrix(points)

        assert isinstance(X, csr_matrix)
        assert X.shape == (2, 3)
        assert sorted(y.tolist()) == [0.0, 1.0]

    def test_training_matrix_empty(self):
        X, y = to_training_matrix([])

        assert X.shape == (0, 0)
        assert y.shape == (0,)
