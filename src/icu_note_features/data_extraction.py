"""
Data Extraction Module for ICU Note Features

This module loads the five input tables of the feature pipeline from a
MIMIC-III DuckDB database:
1. Patients (sex, date of birth, date of death)
2. ICU stays (admission and discharge times)
3. Clinical notes (chart time and text)
4. SAPS II severity scores (from the MIMIC-III concepts)
5. Elixhauser comorbidities, packed into a 30-character flag string

Column names are translated to the pipeline's schemas (see utils.py); no
filtering other than dropping erroneous or unlinked notes happens here.
"""
import duckdb
import pandas as pd
from typing import Dict, List, Optional

from .logging_utils import logger

# Path to the MIMIC-III DuckDB database file
DUCKDB_PATH = "mimiciii.duckdb"

# Elixhauser (AHRQ) comorbidity flags, in the order they are packed
ELIXHAUSER_COLUMNS = [
    "congestive_heart_failure", "cardiac_arrhythmias", "valvular_disease",
    "pulmonary_circulation", "peripheral_vascular", "hypertension",
    "paralysis", "other_neurological", "chronic_pulmonary",
    "diabetes_uncomplicated", "diabetes_complicated", "hypothyroidism",
    "renal_failure", "liver_disease", "peptic_ulcer",
    "aids", "lymphoma", "metastatic_cancer",
    "solid_tumor", "rheumatoid_arthritis", "coagulopathy",
    "obesity", "weight_loss", "fluid_electrolyte",
    "blood_loss_anemia", "deficiency_anemias", "alcohol_abuse",
    "drug_abuse", "psychoses", "depression",
]

PATIENTS_SQL = """
    SELECT p.subject_id::INTEGER AS patient_id,
           CASE WHEN p.gender = 'M' THEN 1 ELSE 0 END AS is_male,
           p.dob::TIMESTAMP AS dob,
           p.expire_flag::INTEGER AS is_dead,
           p.dod::TIMESTAMP AS dod,
           NULL::TIMESTAMP AS index_date
    FROM patients p
    {subject_filter}
    """

ICU_STAYS_SQL = """
    SELECT i.subject_id::INTEGER AS patient_id,
           i.hadm_id::INTEGER AS hadm_id,
           i.icustay_id::INTEGER AS icustay_id,
           i.intime::TIMESTAMP AS in_date,
           i.outtime::TIMESTAMP AS out_date
    FROM icustays i
    {subject_filter}
    """

# Discharge summaries only carry a chart date, so fall back to it
NOTES_SQL = """
    SELECT n.subject_id::INTEGER AS patient_id,
           n.hadm_id::INTEGER AS hadm_id,
           COALESCE(n.charttime::TIMESTAMP, n.chartdate::TIMESTAMP) AS chart_date,
           n.text AS text
    FROM noteevents n
    WHERE n.hadm_id IS NOT NULL
      AND n.iserror IS NULL
      {subject_condition}
    """

SAPS2_SQL = """
    SELECT s.subject_id::INTEGER AS patient_id,
           s.hadm_id::INTEGER AS hadm_id,
           s.icustay_id::INTEGER AS icustay_id,
           s.sapsii::DOUBLE AS score
    FROM sapsii s
    {subject_filter}
    """

COMORBIDITIES_SQL = """
    SELECT e.subject_id::INTEGER AS patient_id,
           e.hadm_id::INTEGER AS hadm_id,
           {flag_string} AS all_values
    FROM elixhauser_ahrq e
    {subject_filter}
    """


def _subject_filter(alias: str, subject_ids: Optional[List[int]], prefix: str = "WHERE") -> str:
    if subject_ids is None:
        return ""
    return f"{prefix} {alias}.subject_id::INTEGER IN (SELECT subject_id FROM tmp_subject_ids)"


def _comorbidity_flag_string(alias: str = "e") -> str:
    """SQL expression concatenating the 30 Elixhauser flags into one digit string."""
    return " || ".join(f"COALESCE({alias}.{col}::INTEGER, 0)::VARCHAR" for col in ELIXHAUSER_COLUMNS)


def extract_tables(con: duckdb.DuckDBPyConnection, subject_ids: Optional[List[int]] = None) -> Dict[str, pd.DataFrame]:
    """
    Load the pipeline's input tables from an open MIMIC-III connection.

    Args:
        con (duckdb.DuckDBPyConnection): Active DuckDB connection to MIMIC-III
        subject_ids (Optional[List[int]]): Restrict to these patients; None loads all

    Returns:
        Dict[str, pd.DataFrame]: Tables keyed by "patients", "icu_stays",
            "notes", "saps2s" and "comorbidities"
    """
    logger.log_start("extract_tables")

    if subject_ids is not None:
        con.register("tmp_subject_ids", pd.DataFrame({"subject_id": subject_ids}))

    tables = {
        "patients": con.execute(PATIENTS_SQL.format(subject_filter=_subject_filter("p", subject_ids))).fetchdf(),
        "icu_stays": con.execute(ICU_STAYS_SQL.format(subject_filter=_subject_filter("i", subject_ids))).fetchdf(),
        "notes": con.execute(NOTES_SQL.format(subject_condition=_subject_filter("n", subject_ids, prefix="AND"))).fetchdf(),
        "saps2s": con.execute(SAPS2_SQL.format(subject_filter=_subject_filter("s", subject_ids))).fetchdf(),
        "comorbidities": con.execute(COMORBIDITIES_SQL.format(
            flag_string=_comorbidity_flag_string("e"),
            subject_filter=_subject_filter("e", subject_ids),
        )).fetchdf(),
    }

    for name, table in tables.items():
        logger.log_info(f"Loaded {name}: {len(table)} rows")

    logger.log_end("extract_tables")
    return tables


def extract_data(duckdb_path: str = DUCKDB_PATH, subject_ids: Optional[List[int]] = None) -> Dict[str, pd.DataFrame]:
    """
    Open the MIMIC-III database, load the input tables and close the connection.
    """
    logger.log_start("extract_data")

    con = duckdb.connect(duckdb_path, read_only=True)
    try:
        tables = extract_tables(con, subject_ids)
    finally:
        con.close()

    logger.log_end("extract_data")
    return tables
