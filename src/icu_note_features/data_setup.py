"""
Data Setup and Pipeline Orchestration Module

This module runs the feature pipeline against the MIMIC-III database and saves
its outputs:
1. Loading the input tables and the stopword list
2. Running MortalityFeaturePipeline for the configured horizon and window
3. Saving the labels, feature tables, labelled points and the pipeline itself

File structure:
- csvs/stopwords.txt: One stopword per line
- data/: Directory for the output tables and the pickled pipeline
"""
import pickle
from pathlib import Path
from typing import Dict

from .data_extraction import DUCKDB_PATH, extract_data
from .integrated_pipeline import MortalityFeaturePipeline
from .logging_utils import logger
from .note_data import load_stopwords
from .target_data import MortalityWindow

# Input files
STOPWORDS_TXT = "csvs/stopwords.txt"

# Output directory for the feature tables
DATA_DIR = "data"

# Run configuration
HOURS_SINCE_FIRST_NOTE = 24
MORTALITY_WINDOW = MortalityWindow.IN_30_DAYS

# Output file names
PIPELINE_FILE = "feature_pipeline.pkl"
FEATURES_FILE = "features.pkl"


def create_data_directory():
    """Create DATA_DIR if it doesn't already exist."""
    logger.log_start("create_data_directory")
    Path(DATA_DIR).mkdir(exist_ok=True)
    logger.log_end("create_data_directory")


def save_outputs(outputs: Dict[str, object], filepath: str):
    """
    Pickle the pipeline outputs.

    The saved dictionary has the keys returned by MortalityFeaturePipeline.run:
    'labels', 'first_note_dates', 'baseline_features', 'baseline_feature_tuples',
    'comorbidity_features', 'topic_features', 'combined_features', 'points',
    'sparse_points', 'X' and 'y'.
    """
    logger.log_start("save_outputs")
    with open(filepath, 'wb') as f:
        pickle.dump(outputs, f)
    logger.log_end("save_outputs")


def main():
    """
    Build the note-based mortality features for the whole database and save
    them, together with the fitted pipeline, under DATA_DIR.
    """
    logger.log_start("main")

    create_data_directory()

    tables = extract_data(DUCKDB_PATH)
    stopwords = load_stopwords(STOPWORDS_TXT)

    pipeline = MortalityFeaturePipeline(hours=HOURS_SINCE_FIRST_NOTE, mortality_window=MORTALITY_WINDOW)
    outputs = pipeline.run(tables, stopwords)

    pipeline.save(Path(DATA_DIR) / PIPELINE_FILE)
    save_outputs(outputs, Path(DATA_DIR) / FEATURES_FILE)

    logger.log_end("main")


if __name__ == "__main__":
    main()
