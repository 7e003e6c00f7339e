"""
Mortality Label Generation

Each patient is labelled 1 if they died inside the selected mortality window
and 0 otherwise:
- IN_ICU: death between ICU admission and ICU discharge (both inclusive)
- IN_30_DAYS: death after discharge, at most 30 whole days later
- IN_1_YEAR: death after discharge, at most 365 whole days later

Whole days are the elapsed time truncated to an integer number of days, so a
death 30 days and 23 hours after discharge still counts as 30 days. The 30-day
and 1-year windows are nested: a death within 30 days is positive for both.
Patients without a date of death are labelled 0 in every window.
"""
from enum import Enum

import pandas as pd

from .logging_utils import logger
from .utils import ICU_STAY_COLUMNS, LABEL_COLUMNS, get_whole_day_difference

# Mortality windows after ICU discharge (in whole days)
MORTALITY_30_DAYS = 30
MORTALITY_1_YEAR_DAYS = 365


class MortalityWindow(Enum):
    IN_ICU = "in_icu"
    IN_30_DAYS = "in_30_days"
    IN_1_YEAR = "in_1_year"


def died_in_window(dod: pd.Series, in_date: pd.Series, out_date: pd.Series, window: MortalityWindow) -> pd.Series:
    """Boolean mask of deaths falling inside ``window``; missing dates of death are False."""
    if window is MortalityWindow.IN_ICU:
        return (dod >= in_date) & (dod <= out_date)

    days_after_discharge = get_whole_day_difference(dod, out_date)
    if window is MortalityWindow.IN_30_DAYS:
        return (dod > out_date) & (days_after_discharge <= MORTALITY_30_DAYS)
    if window is MortalityWindow.IN_1_YEAR:
        return (dod > out_date) & (days_after_discharge <= MORTALITY_1_YEAR_DAYS)

    raise ValueError(f"Unknown mortality window: {window!r}")


def generate_label_tuples(patients: pd.DataFrame, icu_stays: pd.DataFrame, window: MortalityWindow) -> pd.DataFrame:
    """
    Label each (patient, ICU stay) pair with the selected mortality outcome.

    Args:
        patients (pd.DataFrame): Normalized patients
        icu_stays (pd.DataFrame): Normalized ICU stays, one per patient
        window (MortalityWindow): Mortality window to label

    Returns:
        pd.DataFrame: Columns patient_id and label (0 or 1)
    """
    logger.log_start("generate_label_tuples")

    pairs = patients[["patient_id", "dod"]].merge(icu_stays[ICU_STAY_COLUMNS], on="patient_id", how="inner")
    died = died_in_window(pairs["dod"], pairs["in_date"], pairs["out_date"], MortalityWindow(window))

    labels = pd.DataFrame({
        "patient_id": pairs["patient_id"],
        "label": died.fillna(False).astype(int),
    })[LABEL_COLUMNS]
    logger.log_info(f"Positive {MortalityWindow(window).value} labels: {int(labels['label'].sum())}/{len(labels)}")

    logger.log_end("generate_label_tuples")
    return labels
