"""
Cohort Normalization for ICU Mortality Feature Construction

This module reduces the raw patient and ICU stay tables to one adult
(patient, ICU stay) pair per patient.

The cohort selection follows these rules:
- Most recent ICU stay only for each patient (latest discharge time)
- Age at ICU admission computed as (admission - date of birth) / 365 days
- Ages of 300 years or more are top-coded to 89 (MIMIC-III shifts the date of
  birth of patients older than 89 so that they appear to be ~300)
- Age >= 18 years

Patients without an ICU stay and ICU stays without a patient are dropped by
inner-join semantics and are not reported.
"""
import pandas as pd
from typing import Tuple

from .logging_utils import logger
from .utils import ICU_STAY_COLUMNS, PATIENT_COLUMNS, get_year_difference

# Cohort inclusion criteria constants
MIN_AGE = 18                    # Minimum patient age in years
MAX_AGE = 89                    # Age assigned to top-coded patients
AGE_TOP_CODE_SENTINEL = 300     # Raw ages at or above this are top-coded


def join_patients_with_icu_stays(patients: pd.DataFrame, icu_stays: pd.DataFrame) -> pd.DataFrame:
    """
    Inner-join ICU stays with their patient on patient_id.

    Returns one row per ICU stay carrying both the patient and the ICU stay
    columns.
    """
    return icu_stays[ICU_STAY_COLUMNS].merge(patients[PATIENT_COLUMNS], on="patient_id", how="inner")


def split_patient_icu_pairs(pairs: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Split joined (patient, ICU stay) rows back into aligned patient and ICU stay frames."""
    pairs = pairs.reset_index(drop=True)
    return pairs[PATIENT_COLUMNS].copy(), pairs[ICU_STAY_COLUMNS].copy()


def select_most_recent_icu_stays(icu_stays: pd.DataFrame) -> pd.DataFrame:
    """
    Keep, for each patient, the ICU stay with the latest discharge time.

    Ties are broken by row order (first occurrence wins).
    """
    if icu_stays.empty:
        return icu_stays[ICU_STAY_COLUMNS].copy()

    icu_stays = icu_stays[ICU_STAY_COLUMNS].reset_index(drop=True)
    latest = icu_stays.dropna(subset=["out_date"]).groupby("patient_id")["out_date"].idxmax()
    return icu_stays.loc[latest.values].reset_index(drop=True)


def calculate_admission_age(in_date: pd.Series, dob: pd.Series) -> pd.Series:
    """
    Age in years at ICU admission, top-coded to MAX_AGE.

    Example:
        >>> in_date = pd.Series([pd.Timestamp('2150-01-01'), pd.Timestamp('2150-01-01')])
        >>> dob = pd.Series([pd.Timestamp('2100-01-01'), pd.Timestamp('1850-01-01')])
        >>> calculate_admission_age(in_date, dob).round(1).tolist()
        [50.0, 89.0]
    """
    age = get_year_difference(in_date, dob).astype(float)
    return age.where(age < AGE_TOP_CODE_SENTINEL, float(MAX_AGE))


def process_raw_patients_and_icu_stays(patients: pd.DataFrame, icu_stays: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Normalize the raw cohort to one adult (patient, ICU stay) pair per patient.

    Args:
        patients (pd.DataFrame): Raw patients; the ``age`` column is optional
                                 and is recomputed
        icu_stays (pd.DataFrame): Raw ICU stays, possibly several per patient

    Returns:
        Tuple[pd.DataFrame, pd.DataFrame]:
            - Patients with ``age`` filled in, one row per retained patient
            - ICU stays aligned row-for-row with the returned patients
    """
    logger.log_start("process_raw_patients_and_icu_stays")

    patients = patients.copy()
    if "age" not in patients.columns:
        patients["age"] = float("nan")

    unique_icu_stays = select_most_recent_icu_stays(icu_stays)
    logger.log_info(f"Most recent ICU stays: {len(unique_icu_stays)}/{len(icu_stays)}")

    pairs = join_patients_with_icu_stays(patients, unique_icu_stays)
    pairs["age"] = calculate_admission_age(pairs["in_date"], pairs["dob"])

    pairs = pairs[pairs["age"] >= MIN_AGE]
    logger.log_info(f"Adult patients with an ICU stay: {len(pairs)}")

    adj_patients, adj_icu_stays = split_patient_icu_pairs(pairs)

    logger.log_end("process_raw_patients_and_icu_stays")
    return adj_patients, adj_icu_stays


def filter_out_patient_icu_without_first_note(patients: pd.DataFrame, icu_stays: pd.DataFrame,
                                              first_note_dates: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Keep only the (patient, ICU stay) pairs of patients having a first note date.

    ``first_note_dates`` only holds patients that passed the note filters, so
    this restricts the cohort to patients with usable notes.
    """
    logger.log_start("filter_out_patient_icu_without_first_note")

    pairs = join_patients_with_icu_stays(patients, icu_stays)
    pairs = pairs.merge(first_note_dates[["patient_id"]].drop_duplicates(), on="patient_id", how="inner")
    filtered_patients, filtered_icu_stays = split_patient_icu_pairs(pairs)

    logger.log_end("filter_out_patient_icu_without_first_note")
    return filtered_patients, filtered_icu_stays
