import logging
from pathlib import Path

import numpy as np
import pandas as pd
from tqdm import tqdm

from meter_forecast import config
from meter_forecast.errors import ConfigurationError, InputDataError

logger = logging.getLogger(__name__)


def predict_ensemble(models, X, batch_size=config.PREDICT_BATCH_SIZE,
                     decimals=config.PREDICTION_DECIMALS, progress=True):
    """
    Average the back-transformed predictions of one or more models.

    Each model predicts log1p readings; these are mapped back with expm1,
    averaged row-wise, clamped at zero and rounded. Prediction runs in
    row batches to bound memory on very large test sets.
    """
    models = list(models)
    if not models:
        raise ConfigurationError("predict", "no trained models to predict with")

    total = np.zeros(len(X), dtype=float)
    for i, model in enumerate(models, start=1):
        batches = range(0, len(X), batch_size)
        for start in tqdm(batches, desc=f"Predicting (model {i}/{len(models)})", disable=not progress):
            batch = X.iloc[start:start + batch_size]
            total[start:start + len(batch)] += np.expm1(np.asarray(model.predict(batch), dtype=float))

    preds = total / len(models)
    negative = int((preds < 0).sum())
    if negative:
        logger.info(f"Clamped {negative} negative predictions to zero")
    return np.round(np.where(preds > 0, preds, 0.0), decimals)


def make_predictions(models, X_test, row_ids, submission_template, id_col=config.ID_COL,
                     target_col=config.TARGET_COL, batch_size=config.PREDICT_BATCH_SIZE):
    """
    Predict every test row and lay the values out in submission template order.
    """
    logger.info("--- Generating Submission ---")
    row_ids = pd.Series(row_ids).reset_index(drop=True)
    if len(row_ids) != len(X_test):
        raise InputDataError("predict", f"{len(row_ids)} row ids for {len(X_test)} test rows")
    if row_ids.duplicated().any():
        raise InputDataError("predict", f"test data has duplicate {id_col} values")

    preds = pd.Series(predict_ensemble(models, X_test, batch_size=batch_size), index=row_ids.to_numpy())

    template_ids = submission_template[id_col]
    unmatched = ~template_ids.isin(preds.index)
    if unmatched.any():
        raise InputDataError(
            "predict",
            f"{int(unmatched.sum())} template {id_col} values have no prediction, "
            f"e.g. {template_ids[unmatched].head().tolist()}"
        )
    extra = len(preds) - len(template_ids)
    if extra > 0:
        logger.warning(f"{extra} test rows are not in the submission template and are dropped")

    submission_df = pd.DataFrame({
        id_col: template_ids.to_numpy(),
        target_col: preds.reindex(template_ids.to_numpy()).to_numpy()
    })
    logger.info(f"Submission shape: {submission_df.shape}")
    logger.info(
        f"Prediction stats: min={submission_df[target_col].min():.2f}, "
        f"max={submission_df[target_col].max():.2f}, mean={submission_df[target_col].mean():.2f}"
    )
    return submission_df


def write_submission(submission_df, filepath=config.SUBMISSION_FILE, decimals=config.PREDICTION_DECIMALS):
    Path(filepath).parent.mkdir(parents=True, exist_ok=True)
    submission_df.to_csv(filepath, index=False, float_format=f'%.{decimals}f')
    logger.info(f"Submission saved to {filepath}")
    return filepath
