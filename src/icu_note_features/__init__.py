"""
Note-Based Feature Construction for ICU Mortality Prediction

This package turns MIMIC-III style patient, ICU stay, severity score, clinical
note and comorbidity tables into fixed-length feature vectors and binary
mortality labels, using only information observable within a configurable
number of hours after each patient's first ICU note.

The package is organized into several components:
- Cohort normalization (most recent ICU stay, age, adults only)
- Note tokenization and first-note (index time) resolution
- Temporal filtering relative to the first note
- LDA topic features from the tokenized notes
- Baseline (age, sex, SAPS II) and comorbidity features
- Mortality labels (in ICU, 30 days, 1 year)
- Assembly of labelled points for a classifier

Main workflow:
1. Normalize patients and ICU stays
2. Restrict notes to the ICU stay and compute first note dates
3. Filter every table to the observation horizon
4. Build topic, baseline and comorbidity features
5. Join features with labels into labelled points
"""
