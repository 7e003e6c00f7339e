"""
Clinical Note Tokenization and First-Note Resolution

This module restricts clinical notes to those written during the retained ICU
stay, tokenizes them, and derives each patient's index time: the chart time of
the earliest note written in the ICU.

Key processing steps:
- Notes are kept when admission <= chart time < discharge and chart time < death
- Text is cleaned (punctuation, words containing digits and isolated letters
  removed), lowercased and split on whitespace
- Tokens must be longer than 3 characters, alphabetic and not a stopword
- Patients whose notes total fewer than 100 tokens are dropped everywhere

Patients without a qualifying note have no index time and therefore do not
appear in any of the returned tables.
"""
import re
from typing import Iterable, List, Tuple

import pandas as pd

from .cohort_data import join_patients_with_icu_stays
from .logging_utils import logger
from .utils import (
    FIRST_NOTE_COLUMNS,
    ICU_STAY_COLUMNS,
    NOTE_COLUMNS,
    PATIENT_COLUMNS,
    TOKENIZED_NOTE_COLUMNS,
    alive_or_after,
    object_column,
    shared_lookup,
)

MIN_TOKEN_COUNT = 100           # Minimum non-stopword tokens per patient
MIN_TOKEN_LENGTH = 3            # Tokens must be strictly longer than this

PUNCTUATION_PATTERN = re.compile(r"""[!@#$%^&*()\[\].\\/_{}+\-−,"'~;:`?=<>]""")
DIGIT_WORD_PATTERN = re.compile(r"\w*\d\w*")
SINGLE_LETTER_PATTERN = re.compile(r"\s[A-Za-z,]\s")
WHITESPACE_PATTERN = re.compile(r"\s")


def load_stopwords(path: str) -> frozenset:
    """Load a stopword list with one word per line; blank lines are ignored."""
    with open(path, encoding="utf-8") as f:
        return frozenset(line.strip().lower() for line in f if line.strip())


def filter_special_characters(document: str) -> str:
    """
    Replace punctuation, words containing digits and isolated letters with spaces.

    Example:
        >>> filter_special_characters("sepsis, shock.")
        'sepsis  shock '
    """
    document = PUNCTUATION_PATTERN.sub(" ", document)
    document = DIGIT_WORD_PATTERN.sub(" ", document)
    # Applied twice so that consecutive single letters are all removed
    document = SINGLE_LETTER_PATTERN.sub(" ", document)
    document = SINGLE_LETTER_PATTERN.sub(" ", document)
    return document


def tokenize_note_text(text: str, stopwords: Iterable[str]) -> List[str]:
    """
    Split a note into cleaned, lowercased, non-stopword tokens.

    Example:
        >>> tokenize_note_text("Patient was intubated; with sepsis x2.", {"with"})
        ['patient', 'intubated', 'sepsis']
    """
    if not isinstance(text, str):
        return []

    words = WHITESPACE_PATTERN.split(filter_special_characters(text).lower())
    return [
        word for word in words
        if len(word) > MIN_TOKEN_LENGTH and word.isalpha() and word not in stopwords
    ]


def tokenize_notes(notes: pd.DataFrame, stopwords: Iterable[str]) -> pd.DataFrame:
    """Tokenize every note, keeping its patient, admission and chart time."""
    with shared_lookup(word.lower() for word in stopwords) as stopword_set:
        tokens = [tokenize_note_text(text, stopword_set) for text in notes["text"]]

    tokenized_notes = notes[["patient_id", "hadm_id", "chart_date"]].reset_index(drop=True)
    tokenized_notes["tokens"] = object_column(tokens)
    return tokenized_notes[TOKENIZED_NOTE_COLUMNS]


def select_notes_in_icu(patients: pd.DataFrame, icu_stays: pd.DataFrame, notes: pd.DataFrame) -> pd.DataFrame:
    """
    Keep notes charted during the patient's ICU stay and before death.

    Notes are matched to ICU stays on (patient_id, hadm_id), which also drops
    notes without an admission id.
    """
    pairs = join_patients_with_icu_stays(patients, icu_stays)
    joined = pairs.merge(notes[NOTE_COLUMNS], on=["patient_id", "hadm_id"], how="inner")

    chart_date = joined["chart_date"]
    in_icu = (
        (joined["in_date"] <= chart_date)
        & (chart_date < joined["out_date"])
        & alive_or_after(joined["dod"], chart_date)
    )
    return joined.loc[in_icu, NOTE_COLUMNS].reset_index(drop=True)


def count_tokens_per_patient(tokenized_notes: pd.DataFrame) -> pd.Series:
    """Total number of tokens per patient across all of their notes."""
    counts = tokenized_notes["tokens"].map(len).astype(int)
    return counts.groupby(tokenized_notes["patient_id"]).sum()


def process_notes_and_calculate_start_dates(
    patients: pd.DataFrame,
    icu_stays: pd.DataFrame,
    notes: pd.DataFrame,
    stopwords: Iterable[str],
    min_token_count: int = MIN_TOKEN_COUNT,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Restrict notes to the ICU stay, drop patients with too few tokens and
    compute each remaining patient's first note date.

    Assumes one ICU stay per patient (see ``process_raw_patients_and_icu_stays``).

    Args:
        patients (pd.DataFrame): Normalized patients
        icu_stays (pd.DataFrame): Normalized ICU stays
        notes (pd.DataFrame): Raw notes
        stopwords (Iterable[str]): Words excluded from the token counts
        min_token_count (int): Minimum total tokens for a patient to be kept

    Returns:
        Tuple of patients, ICU stays, notes, first note dates and tokenized
        notes, all restricted to patients with at least ``min_token_count``
        tokens in their ICU notes.
    """
    logger.log_start("process_notes_and_calculate_start_dates")

    notes_in_icu = select_notes_in_icu(patients, icu_stays, notes)
    logger.log_info(f"Notes written during the ICU stay: {len(notes_in_icu)}/{len(notes)}")

    tokenized_notes = tokenize_notes(notes_in_icu, stopwords)

    token_counts = count_tokens_per_patient(tokenized_notes)
    kept_ids = token_counts[token_counts >= min_token_count].index
    logger.log_info(f"Patients with >= {min_token_count} tokens: {len(kept_ids)}/{len(token_counts)}")

    adjusted_notes = notes_in_icu[notes_in_icu["patient_id"].isin(kept_ids)].reset_index(drop=True)
    adjusted_tokenized_notes = tokenized_notes[tokenized_notes["patient_id"].isin(kept_ids)].reset_index(drop=True)

    first_note_dates = (
        adjusted_notes.groupby("patient_id", as_index=False)["chart_date"].min()
        .rename(columns={"chart_date": "first_note_date"})[FIRST_NOTE_COLUMNS]
    )

    adjusted_patients = patients[PATIENT_COLUMNS].merge(first_note_dates[["patient_id"]], on="patient_id", how="inner")
    adjusted_icu_stays = icu_stays[ICU_STAY_COLUMNS].merge(first_note_dates[["patient_id"]], on="patient_id", how="inner")

    logger.log_end("process_notes_and_calculate_start_dates")
    return adjusted_patients, adjusted_icu_stays, adjusted_notes, first_note_dates, adjusted_tokenized_notes
