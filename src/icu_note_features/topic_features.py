"""
Retrospective Topic Model Features from Tokenized Clinical Notes

This module turns a variable number of tokenized notes per patient into one
fixed-length vector per patient using Latent Dirichlet Allocation.

Processing steps:
1. Build a vocabulary of all distinct tokens in the corpus (sorted, so the
   term indices are stable between runs on the same corpus)
2. Convert each note into a sparse term-frequency vector over the vocabulary
3. Fit an LDA model with K topics and obtain each note's topic distribution
4. Average the topic distributions of each patient's notes, one equal weight
   per note

Notes without any token carry no topic information and are left out of the
model and the averages. Patients without a non-empty note are absent from the
output; callers joining on patient_id must not treat them as having all-zero
topic features. The notes are expected to be filtered to the observation
horizon already.
"""
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix
from sklearn.decomposition import LatentDirichletAllocation
from sklearn.feature_extraction.text import CountVectorizer

from .logging_utils import logger
from .utils import FEATURE_ARRAY_COLUMNS, empty_frame, object_column

# Topic model configuration
DEFAULT_NUM_TOPICS = 50
DEFAULT_NUM_ITERATIONS = 50
RANDOM_SEED = 42                # Fixed seed so that topic features are reproducible


class TopicModelConvergenceError(RuntimeError):
    """Raised when topic inference produces non-finite topic distributions."""


class TopicModel:
    """
    A fitted topic model together with the vocabulary it was fitted on.

    Attributes:
        vocabulary_terms (List[str]): Terms ordered by their vocabulary index
        topic_term_weights (np.ndarray): Shape (k, vocabulary size); each row
                                         sums to 1
    """

    def __init__(self, vocabulary_terms: List[str], topic_term_weights: np.ndarray):
        self.vocabulary_terms = vocabulary_terms
        self.topic_term_weights = topic_term_weights

    @property
    def num_topics(self) -> int:
        return self.topic_term_weights.shape[0]

    def describe_topics(self, max_terms_per_topic: int = 10) -> List[List[Tuple[str, float]]]:
        """
        Top weighted terms of every topic, heaviest first.

        Returns:
            List with one entry per topic, each a list of (term, weight) pairs
        """
        topics = []
        for weights in self.topic_term_weights:
            top_indices = np.argsort(weights)[::-1][:max_terms_per_topic]
            topics.append([(self.vocabulary_terms[i], float(weights[i])) for i in top_indices])
        return topics


def _pretokenized(tokens: Iterable[str]) -> List[str]:
    return list(tokens)


def _token_vectorizer(vocabulary: Optional[Dict[str, int]] = None) -> CountVectorizer:
    """CountVectorizer over notes that are already token lists."""
    return CountVectorizer(analyzer=_pretokenized, vocabulary=vocabulary)


def build_vocabulary(tokenized_notes: pd.DataFrame) -> Dict[str, int]:
    """
    Map every distinct token in the corpus to an integer index.

    An empty corpus, or one without any token, gives an empty vocabulary.

    Example:
        >>> notes = pd.DataFrame({"tokens": [["sepsis", "shock"], ["shock", "fever"]]})
        >>> build_vocabulary(notes)
        {'fever': 0, 'sepsis': 1, 'shock': 2}
    """
    vectorizer = _token_vectorizer()
    try:
        vectorizer.fit(tokenized_notes["tokens"])
    except ValueError:
        # CountVectorizer refuses to fit an empty vocabulary
        return {}
    return dict(sorted(vectorizer.vocabulary_.items(), key=lambda item: item[1]))


def to_term_frequency_matrix(tokenized_notes: pd.DataFrame, vocabulary: Dict[str, int]) -> csr_matrix:
    """
    Term counts of every note as a sparse (notes x vocabulary) matrix.

    Tokens missing from the vocabulary are ignored.
    """
    if not vocabulary:
        return csr_matrix((len(tokenized_notes), 0))
    return csr_matrix(_token_vectorizer(vocabulary).transform(tokenized_notes["tokens"]))


def select_notes_with_tokens(tokenized_notes: pd.DataFrame) -> pd.DataFrame:
    """Drop notes whose token list is empty."""
    has_tokens = tokenized_notes["tokens"].map(len) > 0
    return tokenized_notes[has_tokens].reset_index(drop=True)


def aggregate_topic_distributions(patient_ids: Sequence, distributions: np.ndarray) -> pd.DataFrame:
    """
    Average the topic distributions of each patient's documents.

    Args:
        patient_ids (Sequence): Patient of each document, by document index
        distributions (np.ndarray): Shape (documents, k) topic distributions

    Returns:
        pd.DataFrame: Columns patient_id and features (length-k arrays)

    Example:
        >>> aggregate_topic_distributions(["p1", "p1"], np.array([[1.0, 0.0], [0.0, 1.0]]))["features"][0]
        array([0.5, 0.5])
    """
    if len(patient_ids) == 0:
        return empty_frame(FEATURE_ARRAY_COLUMNS)

    frame = pd.DataFrame(np.asarray(distributions, dtype=float))
    means = frame.groupby(pd.Series(list(patient_ids), name="patient_id"), sort=True).mean()

    return pd.DataFrame({
        "patient_id": means.index.tolist(),
        "features": object_column(means.to_numpy()),
    })


def fit_topic_model(
    tokenized_notes: pd.DataFrame,
    num_iterations: int = DEFAULT_NUM_ITERATIONS,
    k: int = DEFAULT_NUM_TOPICS,
    random_state: Optional[int] = RANDOM_SEED,
    n_jobs: Optional[int] = None,
) -> Tuple[Optional[TopicModel], np.ndarray]:
    """
    Fit LDA on the tokenized notes and infer each note's topic distribution.

    Returns:
        Tuple containing:
            - TopicModel, or None when the corpus has no tokens
            - np.ndarray of shape (notes, k) with one topic distribution per note

    Raises:
        TopicModelConvergenceError: if any inferred distribution is not finite
    """
    logger.log_start("fit_topic_model")

    vocabulary = build_vocabulary(tokenized_notes)
    logger.log_info(f"Vocabulary size: {len(vocabulary)}, documents: {len(tokenized_notes)}")
    if not vocabulary:
        logger.log_end("fit_topic_model")
        return None, np.empty((0, k))

    documents = to_term_frequency_matrix(tokenized_notes, vocabulary)

    lda = LatentDirichletAllocation(
        n_components=k,
        max_iter=num_iterations,
        learning_method="batch",
        random_state=random_state,
        n_jobs=n_jobs,
    )
    distributions = lda.fit_transform(documents)

    if not np.all(np.isfinite(distributions)):
        logger.log_end("fit_topic_model")
        raise TopicModelConvergenceError(
            f"LDA with k={k} and {num_iterations} iterations produced non-finite topic distributions"
        )

    topic_term_weights = lda.components_ / lda.components_.sum(axis=1, keepdims=True)
    vocabulary_terms = sorted(vocabulary, key=vocabulary.get)

    logger.log_end("fit_topic_model")
    return TopicModel(vocabulary_terms, topic_term_weights), distributions


def fit_retrospective_topic_model(
    tokenized_notes: pd.DataFrame,
    num_iterations: int = DEFAULT_NUM_ITERATIONS,
    k: int = DEFAULT_NUM_TOPICS,
    random_state: Optional[int] = RANDOM_SEED,
    n_jobs: Optional[int] = None,
) -> Tuple[Optional[TopicModel], pd.DataFrame]:
    """
    Fit the topic model and average each patient's note distributions.

    Takes the same arguments as ``retrospective_topic_model``.

    Returns:
        Tuple containing:
            - TopicModel, or None when the corpus has no tokens
            - pd.DataFrame with columns patient_id and features (length-k arrays)
    """
    logger.log_start("fit_retrospective_topic_model")
    try:
        notes = select_notes_with_tokens(tokenized_notes)
        logger.log_info(f"Notes with tokens: {len(notes)}/{len(tokenized_notes)}")

        model, distributions = fit_topic_model(notes, num_iterations, k, random_state, n_jobs)
        if model is None:
            return None, empty_frame(FEATURE_ARRAY_COLUMNS)

        note_features = aggregate_topic_distributions(notes["patient_id"].tolist(), distributions)
        logger.log_info(f"Patients with topic features: {len(note_features)}")
        return model, note_features
    finally:
        logger.log_end("fit_retrospective_topic_model")


def retrospective_topic_model(
    tokenized_notes: pd.DataFrame,
    num_iterations: int = DEFAULT_NUM_ITERATIONS,
    k: int = DEFAULT_NUM_TOPICS,
    random_state: Optional[int] = RANDOM_SEED,
    n_jobs: Optional[int] = None,
) -> pd.DataFrame:
    """
    Per-patient mean topic distribution over the patient's notes.

    Assumes the tokens have had their stopwords removed.

    Args:
        tokenized_notes (pd.DataFrame): Tokenized notes, already filtered to
                                        the observation horizon
        num_iterations (int): LDA iteration budget
        k (int): Number of topics
        random_state (Optional[int]): Seed of the topic model; None is not reproducible
        n_jobs (Optional[int]): Parallel jobs used by the topic model

    Returns:
        pd.DataFrame: Columns patient_id and features (length-k arrays)
    """
    _, note_features = fit_retrospective_topic_model(tokenized_notes, num_iterations, k, random_state, n_jobs)
    return note_features
