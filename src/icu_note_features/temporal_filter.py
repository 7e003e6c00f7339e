"""
Temporal Cutoff Filtering Relative to the First Note

Features may only use information observable within ``hours`` hours of a
patient's first ICU note. For every patient the cutoff is

    cutoff = first_note_date + hours

and the tables are filtered with one shared predicate:
- Patients / ICU stays are kept when discharge > cutoff and death > cutoff
  (the outcome is still unknown at the cutoff)
- Notes are kept when chart time < cutoff

A horizon of zero or less disables filtering and returns the inputs unchanged.
"""
import pandas as pd
from typing import Tuple

from .cohort_data import join_patients_with_icu_stays, split_patient_icu_pairs
from .logging_utils import logger
from .utils import FIRST_NOTE_COLUMNS, alive_or_after, get_hour_offset


def _attach_cutoff(df: pd.DataFrame, first_note_dates: pd.DataFrame, hours: int) -> pd.DataFrame:
    """Inner-join rows with their patient's first note date and add the cutoff time."""
    joined = df.merge(first_note_dates[FIRST_NOTE_COLUMNS], on="patient_id", how="inner")
    joined["cutoff"] = joined["first_note_date"] + get_hour_offset(hours)
    return joined


def _outcome_after_cutoff(joined: pd.DataFrame) -> pd.Series:
    return (joined["out_date"] > joined["cutoff"]) & alive_or_after(joined["dod"], joined["cutoff"])


def _charted_before_cutoff(joined: pd.DataFrame) -> pd.Series:
    return joined["chart_date"] < joined["cutoff"]


def _filter_patient_icu_pairs(patients: pd.DataFrame, icu_stays: pd.DataFrame,
                              first_note_dates: pd.DataFrame, hours: int) -> pd.DataFrame:
    pairs = _attach_cutoff(join_patients_with_icu_stays(patients, icu_stays), first_note_dates, hours)
    return pairs[_outcome_after_cutoff(pairs)]


def _filter_note_rows(notes: pd.DataFrame, first_note_dates: pd.DataFrame, hours: int) -> pd.DataFrame:
    columns = list(notes.columns)
    joined = _attach_cutoff(notes, first_note_dates, hours)
    return joined.loc[_charted_before_cutoff(joined), columns].reset_index(drop=True)


def filter_data_on_hours_since_first_note(patients: pd.DataFrame, icu_stays: pd.DataFrame,
                                          first_note_dates: pd.DataFrame, hours: int) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Keep patients and ICU stays still in the ICU and alive ``hours`` after their first note.

    Args:
        patients (pd.DataFrame): Patients
        icu_stays (pd.DataFrame): ICU stays, one per patient
        first_note_dates (pd.DataFrame): patient_id -> first_note_date
        hours (int): Observation horizon; <= 0 disables filtering

    Returns:
        Tuple[pd.DataFrame, pd.DataFrame]: Aligned patients and ICU stays
    """
    if hours <= 0:
        return patients, icu_stays

    logger.log_start("filter_data_on_hours_since_first_note")
    pairs = _filter_patient_icu_pairs(patients, icu_stays, first_note_dates, hours)
    logger.log_info(f"Patients with outcome after {hours}h cutoff: {len(pairs)}/{len(patients)}")
    filtered_patients, filtered_icu_stays = split_patient_icu_pairs(pairs)
    logger.log_end("filter_data_on_hours_since_first_note")
    return filtered_patients, filtered_icu_stays


def filter_data_and_notes_on_hours_since_first_note(
    patients: pd.DataFrame,
    icu_stays: pd.DataFrame,
    notes: pd.DataFrame,
    first_note_dates: pd.DataFrame,
    hours: int,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Filter patients and ICU stays as ``filter_data_on_hours_since_first_note``
    and, independently, keep the notes charted before each patient's cutoff.

    Notes of patients dropped by the outcome predicate are still returned;
    use ``filter_all_on_hours_since_first_note`` to drop them too.
    """
    if hours <= 0:
        return patients, icu_stays, notes

    filtered_patients, filtered_icu_stays = filter_data_on_hours_since_first_note(
        patients, icu_stays, first_note_dates, hours)
    filtered_notes = _filter_note_rows(notes, first_note_dates, hours)
    return filtered_patients, filtered_icu_stays, filtered_notes


def filter_all_on_hours_since_first_note(
    patients: pd.DataFrame,
    icu_stays: pd.DataFrame,
    notes: pd.DataFrame,
    first_note_dates: pd.DataFrame,
    hours: int,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Filter patients, ICU stays and notes together: notes are kept only for
    patients that survive the outcome predicate and only before the cutoff.
    """
    if hours <= 0:
        return patients, icu_stays, notes

    logger.log_start("filter_all_on_hours_since_first_note")
    pairs = _filter_patient_icu_pairs(patients, icu_stays, first_note_dates, hours)
    filtered_patients, filtered_icu_stays = split_patient_icu_pairs(pairs)

    surviving_dates = first_note_dates.merge(filtered_patients[["patient_id"]], on="patient_id", how="inner")
    filtered_notes = _filter_note_rows(notes, surviving_dates, hours)
    logger.log_info(f"Patients kept: {len(filtered_patients)}/{len(patients)}, notes kept: {len(filtered_notes)}/{len(notes)}")

    logger.log_end("filter_all_on_hours_since_first_note")
    return filtered_patients, filtered_icu_stays, filtered_notes


def filter_tokenized_notes_on_hours_since_first_note(tokenized_notes: pd.DataFrame,
                                                     first_note_dates: pd.DataFrame, hours: int) -> pd.DataFrame:
    """Keep tokenized notes charted before their patient's cutoff."""
    if hours <= 0:
        return tokenized_notes

    logger.log_start("filter_tokenized_notes_on_hours_since_first_note")
    filtered_notes = _filter_note_rows(tokenized_notes, first_note_dates, hours)
    logger.log_info(f"Tokenized notes before cutoff: {len(filtered_notes)}/{len(tokenized_notes)}")
    logger.log_end("filter_tokenized_notes_on_hours_since_first_note")
    return filtered_notes
