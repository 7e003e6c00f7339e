"""
Feature Assembly into Labelled Points

Joins per-patient features with mortality labels on patient_id to produce
(label, feature vector) pairs for a downstream classifier. Patients missing
from either side are excluded.

Two encodings are supported:
- Dense: one or more array feature tables concatenated in the caller's order
- Sparse: named features mapped through a feature-name -> index table built
  from all distinct (lowercased) feature names, sorted alphabetically
"""
from collections import namedtuple
from functools import reduce
from typing import Dict, List, Tuple, Union

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix, vstack

from .logging_utils import logger
from .utils import FEATURE_ARRAY_COLUMNS, LABEL_COLUMNS, empty_frame, object_column, shared_lookup

LabeledPoint = namedtuple("LabeledPoint", ["label", "features"])


def combine_feature_arrays(*sources: pd.DataFrame) -> pd.DataFrame:
    """
    Concatenate several dense feature tables per patient.

    Only patients present in every source are kept; arrays are concatenated
    in the order the sources are given.
    """
    if not sources:
        return empty_frame(FEATURE_ARRAY_COLUMNS)

    renamed = [
        source[FEATURE_ARRAY_COLUMNS].rename(columns={"features": f"features_{i}"})
        for i, source in enumerate(sources)
    ]
    joined = reduce(lambda left, right: left.merge(right, on="patient_id", how="inner"), renamed)

    feature_columns = [f"features_{i}" for i in range(len(sources))]
    combined = [
        np.concatenate([np.asarray(part, dtype=float) for part in parts])
        for parts in zip(*(joined[col] for col in feature_columns))
    ]
    return pd.DataFrame({"patient_id": joined["patient_id"], "features": object_column(combined)}, columns=FEATURE_ARRAY_COLUMNS)


def construct_for_svm(features: pd.DataFrame, labels: pd.DataFrame) -> List[LabeledPoint]:
    """
    Pair dense feature arrays with labels.

    Args:
        features (pd.DataFrame): Columns patient_id and features
        labels (pd.DataFrame): Columns patient_id and label

    Returns:
        List[LabeledPoint]: One point per patient present in both tables
    """
    logger.log_start("construct_for_svm")

    joined = labels[LABEL_COLUMNS].merge(features[FEATURE_ARRAY_COLUMNS], on="patient_id", how="inner")
    points = [
        LabeledPoint(float(label), np.asarray(vector, dtype=float))
        for label, vector in zip(joined["label"], joined["features"])
    ]
    logger.log_info(f"Labelled points: {len(points)} (labels: {len(labels)}, feature rows: {len(features)})")

    logger.log_end("construct_for_svm")
    return points


def build_feature_index(features: pd.DataFrame) -> Dict[str, int]:
    """
    Map every distinct lowercased feature name to a column index.

    Example:
        >>> rows = pd.DataFrame({"feature_name": ["saps_score", "patient_age", "Patient_Age"]})
        >>> build_feature_index(rows)
        {'patient_age': 0, 'saps_score': 1}
    """
    names = sorted({str(name).lower() for name in features["feature_name"]})
    return {name: index for index, name in enumerate(names)}


def construct_sparse_feature_vectors(features: pd.DataFrame, feature_index: Dict[str, int]) -> pd.DataFrame:
    """
    Group named features per patient into 1 x n sparse vectors.

    Returns:
        pd.DataFrame: Columns patient_id and features (csr_matrix of shape
                      (1, len(feature_index)))
    """
    if features.empty:
        return empty_frame(FEATURE_ARRAY_COLUMNS)

    with shared_lookup(feature_index) as fmap:
        indexed = pd.DataFrame({
            "patient_id": features["patient_id"],
            "index": [fmap[str(name).lower()] for name in features["feature_name"]],
            "value": features["value"].astype(float),
        })

    patient_ids, vectors = [], []
    for patient_id, group in indexed.groupby("patient_id", sort=True):
        cols = group["index"].to_numpy()
        vectors.append(csr_matrix(
            (group["value"].to_numpy(), (np.zeros(len(cols), dtype=int), cols)),
            shape=(1, len(feature_index)),
        ))
        patient_ids.append(patient_id)

    return pd.DataFrame({"patient_id": patient_ids, "features": object_column(vectors)}, columns=FEATURE_ARRAY_COLUMNS)


def construct_for_svm_sparse(features: pd.DataFrame, labels: pd.DataFrame) -> Tuple[List[LabeledPoint], Dict[str, int]]:
    """
    Pair sparse named features with labels.

    Args:
        features (pd.DataFrame): Columns patient_id, feature_name and value
        labels (pd.DataFrame): Columns patient_id and label

    Returns:
        Tuple containing:
            - List[LabeledPoint] whose features are 1 x n csr_matrix rows
            - The feature-name -> index map used to build them
    """
    logger.log_start("construct_for_svm_sparse")

    feature_index = build_feature_index(features)
    vectors = construct_sparse_feature_vectors(features, feature_index)

    joined = vectors.merge(labels[LABEL_COLUMNS], on="patient_id", how="inner")
    points = [LabeledPoint(float(label), vector) for label, vector in zip(joined["label"], joined["features"])]
    logger.log_info(f"Sparse labelled points: {len(points)} over {len(feature_index)} features")

    logger.log_end("construct_for_svm_sparse")
    return points, feature_index


def to_training_matrix(points: List[LabeledPoint]) -> Tuple[Union[np.ndarray, csr_matrix], np.ndarray]:
    """
    Stack labelled points into a feature matrix and a label vector.

    Dense points give an np.ndarray, sparse points a csr_matrix.
    """
    y = np.array([point.label for point in points], dtype=float)
    if not points:
        return np.empty((0, 0)), y

    if isinstance(points[0].features, csr_matrix):
        return vstack([point.features for point in points], format="csr"), y
    return np.vstack([point.features for point in points]), y
