"""
Time helpers, column schemas and shared lookup tables.

This module defines the DataFrame layouts of every entity handled by the
pipeline, helpers for the whole-day / hour arithmetic used by the temporal
filters and the label windows, and the ``shared_lookup`` context manager used
to hand read-only tables (stopwords, feature index) to row-wise
work.
"""
from contextlib import contextmanager
from types import MappingProxyType
from typing import Iterator, Mapping

import numpy as np
import pandas as pd

# Entity schemas
PATIENT_COLUMNS = ["patient_id", "is_male", "dob", "is_dead", "dod", "index_date", "age"]
ICU_STAY_COLUMNS = ["patient_id", "hadm_id", "icustay_id", "in_date", "out_date"]
SAPS2_COLUMNS = ["patient_id", "hadm_id", "icustay_id", "score"]
NOTE_COLUMNS = ["patient_id", "hadm_id", "chart_date", "text"]
TOKENIZED_NOTE_COLUMNS = ["patient_id", "hadm_id", "chart_date", "tokens"]
FIRST_NOTE_COLUMNS = ["patient_id", "first_note_date"]
COMORBIDITY_COLUMNS = ["patient_id", "hadm_id", "all_values"]

# Output schemas
FEATURE_TUPLE_COLUMNS = ["patient_id", "feature_name", "value"]
FEATURE_ARRAY_COLUMNS = ["patient_id", "features"]
LABEL_COLUMNS = ["patient_id", "label"]

DAYS_PER_YEAR = 365


def get_hour_offset(hours: int) -> pd.Timedelta:
    """
    Observation horizon as a Timedelta.

    Example:
        >>> get_hour_offset(24)
        Timedelta('1 days 00:00:00')
    """
    return pd.Timedelta(hours=hours)


def get_year_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Fractional years between two datetime series, using 365-day years.

    Both series are taken to second resolution first, so that gaps of
    centuries (shifted dates of birth) do not overflow nanosecond arithmetic.

    Example:
        >>> end = pd.Series([pd.Timestamp('2101-01-01')])
        >>> start = pd.Series([pd.Timestamp('2100-01-01')])
        >>> get_year_difference(end, start)
        0    1.0
        dtype: float64
    """
    return (end.dt.as_unit("s") - start.dt.as_unit("s")) / pd.Timedelta(days=DAYS_PER_YEAR)


def get_whole_day_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Whole days elapsed between two datetime series, truncated toward zero.

    Missing values stay missing (float NaN).

    Example:
        >>> end = pd.Series([pd.Timestamp('2100-01-31 23:00')])
        >>> start = pd.Series([pd.Timestamp('2100-01-01')])
        >>> get_whole_day_difference(end, start)
        0    30.0
        dtype: float64
    """
    return np.trunc((end - start) / pd.Timedelta(days=1))


def empty_frame(columns) -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype=object) for col in columns})


def object_column(values) -> np.ndarray:
    """
    1-D object array holding one value (array, token list, sparse row) per row.

    Keeps numpy from turning equal-length arrays into a 2-D block when the
    values are stored in a DataFrame column.
    """
    values = list(values)
    column = np.empty(len(values), dtype=object)
    for i, value in enumerate(values):
        column[i] = value
    return column


def alive_or_after(dod: pd.Series, bound: pd.Series) -> pd.Series:
    """True where the patient has no date of death or died after ``bound``."""
    return dod.isna() | (dod > bound)


@contextmanager
def shared_lookup(table) -> Iterator[Mapping]:
    """
    Expose a read-only view of a lookup table for the duration of a block.

    Dicts are copied and other iterables become a key-only mapping. The copy is
    exposed through a MappingProxyType and cleared on exit, so a view that
    escapes the ``with`` block is empty.

    Example:
        >>> with shared_lookup({"sepsis": 0}) as vocab:
        ...     vocab["sepsis"]
        0
    """
    backing = dict(table) if isinstance(table, Mapping) else dict.fromkeys(table)
    try:
        yield MappingProxyType(backing)
    finally:
        backing.clear()
