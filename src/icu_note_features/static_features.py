"""
Baseline and Comorbidity Features

This module builds the non-text features of each patient.

Baseline features (scaled to [0, 1]):
1. patient_age: age at ICU admission / 89
2. patient_sex: 1 for male, 0 otherwise
3. saps_score: SAPS II score / 163 (the maximum possible score)

They are available as sparse (patient_id, feature_name, value) rows or as a
dense [age, sex, score] array per patient.

Derived features: the 30 Elixhauser comorbidity flags of the retained
admission, decoded from a 30-character digit string into a 30-element array.
"""
import numpy as np
import pandas as pd
from typing import Optional

from .cohort_data import MAX_AGE, join_patients_with_icu_stays
from .logging_utils import logger
from .temporal_filter import filter_data_on_hours_since_first_note
from .utils import (
    FEATURE_ARRAY_COLUMNS,
    FEATURE_TUPLE_COLUMNS,
    SAPS2_COLUMNS,
    empty_frame,
    object_column,
)

MAX_SAPS2_SCORE = 163           # Maximum possible SAPS II score
COMORBIDITY_FLAG_COUNT = 30     # Number of Elixhauser comorbidity flags

# Sparse feature names, in the order of the dense baseline array
BASELINE_FEATURE_NAMES = ["patient_age", "patient_sex", "saps_score"]


class MalformedComorbidityError(ValueError):
    """Raised when a comorbidity flag string has fewer than 30 characters."""


def _baseline_values(patients: pd.DataFrame, icu_stays: pd.DataFrame, saps2s: pd.DataFrame,
                     first_note_dates: Optional[pd.DataFrame], hours: int) -> pd.DataFrame:
    """
    Scaled age, sex and SAPS II score of every patient having all three.

    ICU stays are joined to patients on patient_id, then to SAPS II scores on
    (patient_id, hadm_id, icustay_id).
    """
    if first_note_dates is not None:
        patients, icu_stays = filter_data_on_hours_since_first_note(patients, icu_stays, first_note_dates, hours)

    pairs = join_patients_with_icu_stays(patients, icu_stays)
    values = pairs.merge(saps2s[SAPS2_COLUMNS], on=["patient_id", "hadm_id", "icustay_id"], how="inner")

    return pd.DataFrame({
        "patient_id": values["patient_id"],
        "patient_age": values["age"].astype(float) / MAX_AGE,
        "patient_sex": values["is_male"].astype(float),
        "saps_score": values["score"].astype(float) / MAX_SAPS2_SCORE,
    }).reset_index(drop=True)


def construct_baseline_feature_tuples(
    patients: pd.DataFrame,
    icu_stays: pd.DataFrame,
    saps2s: pd.DataFrame,
    first_note_dates: Optional[pd.DataFrame] = None,
    hours: int = 0,
) -> pd.DataFrame:
    """
    Baseline features as sparse (patient_id, feature_name, value) rows.

    Args:
        patients (pd.DataFrame): Normalized patients
        icu_stays (pd.DataFrame): Normalized ICU stays
        saps2s (pd.DataFrame): SAPS II scores
        first_note_dates (Optional[pd.DataFrame]): When given, patients whose
            outcome is known within ``hours`` of their first note are dropped first
        hours (int): Observation horizon used with ``first_note_dates``

    Returns:
        pd.DataFrame: Three rows per patient with columns patient_id,
                      feature_name and value
    """
    logger.log_start("construct_baseline_feature_tuples")

    values = _baseline_values(patients, icu_stays, saps2s, first_note_dates, hours)
    if values.empty:
        logger.log_end("construct_baseline_feature_tuples")
        return empty_frame(FEATURE_TUPLE_COLUMNS)

    tuples = values.melt(
        id_vars="patient_id",
        value_vars=BASELINE_FEATURE_NAMES,
        var_name="feature_name",
        value_name="value",
    )[FEATURE_TUPLE_COLUMNS]

    logger.log_end("construct_baseline_feature_tuples")
    return tuples


def construct_baseline_feature_arrays(
    patients: pd.DataFrame,
    icu_stays: pd.DataFrame,
    saps2s: pd.DataFrame,
    first_note_dates: Optional[pd.DataFrame] = None,
    hours: int = 0,
) -> pd.DataFrame:
    """
    Baseline features as one dense [age, sex, score] array per patient.

    Takes the same arguments as ``construct_baseline_feature_tuples``.
    """
    logger.log_start("construct_baseline_feature_arrays")

    values = _baseline_values(patients, icu_stays, saps2s, first_note_dates, hours)
    arrays = pd.DataFrame({
        "patient_id": values["patient_id"],
        "features": object_column(values[BASELINE_FEATURE_NAMES].to_numpy(dtype=float)),
    }, columns=FEATURE_ARRAY_COLUMNS)

    logger.log_end("construct_baseline_feature_arrays")
    return arrays


def decode_comorbidity_flags(all_values: str) -> np.ndarray:
    """
    Decode the first 30 digits of a comorbidity flag string.

    Example:
        >>> decode_comorbidity_flags("000001" + "0" * 24)[:6]
        array([0., 0., 0., 0., 0., 1.])

    Raises:
        MalformedComorbidityError: if the string has fewer than 30 characters
    """
    if not isinstance(all_values, str) or len(all_values) < COMORBIDITY_FLAG_COUNT:
        raise MalformedComorbidityError(
            f"Expected {COMORBIDITY_FLAG_COUNT} comorbidity flags, got {all_values!r}"
        )
    return np.array([ord(flag) - ord("0") for flag in all_values[:COMORBIDITY_FLAG_COUNT]], dtype=float)


def construct_derived_features(patients: pd.DataFrame, icu_stays: pd.DataFrame,
                               comorbidities: pd.DataFrame) -> pd.DataFrame:
    """
    Comorbidity flag arrays of the retained admission of each patient.

    Comorbidity rows are matched to the (patient_id, hadm_id) of the retained
    ICU stay; rows of other admissions are dropped.

    Returns:
        pd.DataFrame: Columns patient_id and features (30-element arrays)

    Raises:
        MalformedComorbidityError: if any matched flag string is too short
    """
    logger.log_start("construct_derived_features")

    admissions = join_patients_with_icu_stays(patients, icu_stays)[["patient_id", "hadm_id"]]
    matched = comorbidities[["patient_id", "hadm_id", "all_values"]].merge(
        admissions, on=["patient_id", "hadm_id"], how="inner")

    derived = pd.DataFrame({
        "patient_id": matched["patient_id"],
        "features": object_column(decode_comorbidity_flags(values) for values in matched["all_values"]),
    }, columns=FEATURE_ARRAY_COLUMNS).reset_index(drop=True)
    logger.log_info(f"Patients with comorbidity flags: {len(derived)}")

    logger.log_end("construct_derived_features")
    return derived
