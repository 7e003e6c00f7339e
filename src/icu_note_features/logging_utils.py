"""
Logging Utilities for the Note Feature Pipeline

This module provides hierarchical logging to follow the nested steps of the
feature construction pipeline (cohort normalization, first-note resolution,
temporal filtering, topic modeling, label generation).

The NestedLogger class indents each line by the current call depth, so that a
pipeline run prints as a tree of started/finished steps with the row counts
that survived each filter printed underneath.

Features:
- Automatic indentation based on call depth
- Millisecond timestamps for timing the expensive steps (LDA, tokenization)
- Start/end logging pattern for functions
- Info lines for row counts at the current depth
"""
from datetime import datetime


class NestedLogger:
    """
    A logger that indents its output by the nesting depth of pipeline steps.

    Each ``log_start`` increases the depth and each ``log_end`` decreases it.
    ``log_info`` prints at the current depth without changing it.

    Attributes:
        _nesting_level (int): Current indentation level (0 = no indentation)
    """

    def __init__(self):
        self._nesting_level = 0

    def _get_timestamp(self) -> str:
        """Return the current time as 'HH:MM:SS.mmm'."""
        return datetime.now().strftime('%H:%M:%S.%f')[:-3]

    def _get_indent(self) -> str:
        return "    " * self._nesting_level

    def log_start(self, function_name: str) -> None:
        """
        Log the start of a pipeline step and indent everything logged until
        the matching ``log_end``.

        Example output:
            10:30:45.123 Started run
                10:30:45.124 Started process_raw_patients_and_icu_stays
        """
        print(f"{self._get_indent()}{self._get_timestamp()} Started {function_name}")
        self._nesting_level += 1

    def log_end(self, function_name: str) -> None:
        """
        Log the end of a pipeline step and dedent.

        Example output:
                10:30:46.789 Finished process_raw_patients_and_icu_stays
            10:30:47.234 Finished run
        """
        if self._nesting_level > 0:
            self._nesting_level -= 1

        print(f"{self._get_indent()}{self._get_timestamp()} Finished {function_name}")

    def log_info(self, message: str) -> None:
        """
        Log a message at the current depth.

        Example output:
                10:30:46.001 Patients with >= 100 tokens: 812/1040
        """
        print(f"{self._get_indent()}{self._get_timestamp()} {message}")


# Shared instance so that nesting is consistent across modules
logger = NestedLogger()
