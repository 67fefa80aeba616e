"""
Building energy meter reading forecasts with gradient-boosted trees.

Modules:
    - data_loader: CSV ingestion with required-column checks
    - feature_engineering: merge, calendar features, categorical encoding
    - model_trainer: stratified partition and LightGBM/XGBoost training
    - predict: ensemble prediction and submission output
    - pipeline: one end-to-end batch run
"""

__version__ = "1.0.0"
