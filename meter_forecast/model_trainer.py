import gc
import logging
import math
import pickle
from datetime import datetime
from pathlib import Path

import lightgbm as lgb
import numpy as np
import pandas as pd
import xgboost as xgb
from sklearn.metrics import mean_squared_error

from meter_forecast import config
from meter_forecast.errors import ConfigurationError

logger = logging.getLogger(__name__)

BACKENDS = ('lightgbm', 'xgboost')


def partition_dataset(y, split_fraction=config.SPLIT_FRACTION, seed=config.SEED,
                      n_groups=config.STRATIFY_GROUPS):
    """
    Split row positions into training and validation sets, stratified on the
    continuous target.

    The target is cut into ``floor(n / n_groups)`` quantile groups, clipped
    to ``[2, n_groups]``, and ``ceil(split_fraction * size)`` rows of every
    group go to training. NaN targets form a group of their own.

    Returns:
        (train_idx, val_idx): sorted, disjoint positional index arrays whose
        union is ``range(len(y))``

    Raises:
        ConfigurationError: if the fraction is outside (0, 1) or the target
            is too short to leave any validation rows
    """
    if not 0 < split_fraction < 1:
        raise ConfigurationError("partition", f"split fraction must be in (0, 1), got {split_fraction}")

    y = pd.Series(np.asarray(y, dtype=float))
    if y.nunique() > 1:
        n_bins = min(max(int(y.notna().sum()) // n_groups, 2), n_groups)
        groups = pd.qcut(y, q=n_bins, labels=False, duplicates='drop')
    else:
        groups = pd.Series(0.0, index=y.index).where(y.notna())
    groups = groups.fillna(-1).to_numpy()

    rng = np.random.RandomState(seed)
    train_parts = []
    for group in np.unique(groups):
        members = np.flatnonzero(groups == group)
        # 0.7 * 10 == 7.000000000000001
        n_train = min(len(members), math.ceil(round(split_fraction * len(members), 9)))
        train_parts.append(rng.choice(members, size=n_train, replace=False))

    train_idx = np.sort(np.concatenate(train_parts)) if train_parts else np.array([], dtype=int)
    val_idx = np.setdiff1d(np.arange(len(y)), train_idx)
    if len(val_idx) == 0:
        raise ConfigurationError(
            "partition", f"{len(y)} rows are too few to hold out a validation set at fraction {split_fraction}"
        )

    logger.info(f"Partitioned {len(y)} rows: {len(train_idx)} train, {len(val_idx)} validation")
    return train_idx, val_idx


def _check_feature_matrix(X, name):
    non_numeric = [col for col in X.columns if not pd.api.types.is_numeric_dtype(X[col].dtype)]
    if non_numeric:
        raise ConfigurationError("train", f"{name} has non-numeric columns {non_numeric}")


class MeterReadingModel:
    """
    Gradient-boosted regressor on the log1p meter reading.

    Wraps a LightGBM or XGBoost booster trained with a validation set for
    early stopping. Predictions come from the best validation iteration.
    """

    def __init__(
        self,
        backend=config.BACKEND,
        params=None,
        num_boost_round=config.NUM_BOOST_ROUND,
        eval_freq=config.EVAL_FREQ,
        early_stopping_rounds=config.EARLY_STOPPING_ROUNDS
    ):
        """
        Args:
            backend: 'lightgbm' or 'xgboost'
            params: Booster parameters; defaults to the backend's entry in config
            num_boost_round: Maximum number of boosting rounds
            eval_freq: Log the validation metric every this many rounds
            early_stopping_rounds: Rounds without validation improvement before halting
        """
        if backend not in BACKENDS:
            raise ConfigurationError("train", f"unknown backend '{backend}', choose from {BACKENDS}")
        if params is None:
            params = config.MODEL_PARAMS if backend == 'lightgbm' else config.XGB_PARAMS

        self.backend = backend
        self.params = dict(params)
        self.num_boost_round = num_boost_round
        self.eval_freq = eval_freq
        self.early_stopping_rounds = early_stopping_rounds

        self.booster = None
        self.feature_names = None
        self.best_iteration = None
        self.training_info = {}
        self._is_fitted = False

    def fit(self, X_train, y_train, X_val, y_val, categorical_features=()):
        """
        Train with early stopping on the validation set.

        Args:
            X_train, X_val: Numeric feature frames with identical columns
            y_train, y_val: log1p-transformed targets
            categorical_features: Integer-coded columns to treat as categorical
        """
        start_time = datetime.now()
        categorical_features = list(categorical_features)

        _check_feature_matrix(X_train, "training matrix")
        _check_feature_matrix(X_val, "validation matrix")
        if list(X_train.columns) != list(X_val.columns):
            raise ConfigurationError("train", "training and validation matrices have different columns")
        missing = [col for col in categorical_features if col not in X_train.columns]
        if missing:
            raise ConfigurationError("train", f"categorical features not in the feature matrix: {missing}")

        logger.info(f"--- Training {self.backend} model ---")
        logger.info(f"Training data shape: X={X_train.shape}, validation X={X_val.shape}")
        logger.info(f"Categorical features: {categorical_features}")
        logger.info(f"Parameters: {self.params}")

        self.feature_names = list(X_train.columns)
        if self.backend == 'lightgbm':
            self._fit_lightgbm(X_train, y_train, X_val, y_val, categorical_features)
        else:
            self._fit_xgboost(X_train, y_train, X_val, y_val)
        gc.collect()
        self._is_fitted = True

        val_rmse = np.sqrt(mean_squared_error(y_val, self.predict(X_val)))
        duration = (datetime.now() - start_time).total_seconds()
        self.training_info = {
            'backend': self.backend,
            'best_iteration': self.best_iteration,
            'validation_rmse': float(val_rmse),
            'training_duration_seconds': duration,
            'n_train': int(X_train.shape[0]),
            'n_val': int(X_val.shape[0]),
            'n_features': int(X_train.shape[1]),
            'trained_at': datetime.now().isoformat()
        }
        logger.info(f"Best iteration: {self.best_iteration}, validation RMSE: {val_rmse:.4f}")
        logger.info(f"Training finished in {duration:.2f} seconds")
        return self

    def _fit_lightgbm(self, X_train, y_train, X_val, y_val, categorical_features):
        dtrain = lgb.Dataset(X_train, label=y_train, categorical_feature=categorical_features,
                             free_raw_data=True)
        dval = lgb.Dataset(X_val, label=y_val, categorical_feature=categorical_features,
                           reference=dtrain, free_raw_data=True)
        self.booster = lgb.train(
            self.params,
            dtrain,
            num_boost_round=self.num_boost_round,
            valid_sets=[dtrain, dval],
            valid_names=['train', 'valid'],
            callbacks=[
                lgb.early_stopping(self.early_stopping_rounds),
                lgb.log_evaluation(self.eval_freq)
            ]
        )
        self.best_iteration = self.booster.best_iteration or self.booster.current_iteration()
        self.booster.free_dataset()
        del dtrain, dval

    def _fit_xgboost(self, X_train, y_train, X_val, y_val):
        dtrain = xgb.DMatrix(X_train, label=y_train)
        dval = xgb.DMatrix(X_val, label=y_val)
        self.booster = xgb.train(
            self.params,
            dtrain,
            num_boost_round=self.num_boost_round,
            evals=[(dtrain, 'train'), (dval, 'valid')],
            early_stopping_rounds=self.early_stopping_rounds,
            verbose_eval=self.eval_freq
        )
        self.best_iteration = self.booster.best_iteration + 1
        del dtrain, dval

    def predict(self, X):
        """Predict log1p meter readings at the best iteration."""
        if not self._is_fitted:
            raise ValueError("Model must be trained before prediction. Call fit() first.")
        if list(X.columns) != self.feature_names:
            raise ConfigurationError(
                "predict", f"expected features {self.feature_names}, got {list(X.columns)}"
            )

        if self.backend == 'lightgbm':
            return self.booster.predict(X, num_iteration=self.best_iteration)
        return self.booster.predict(xgb.DMatrix(X), iteration_range=(0, self.best_iteration))

    def feature_importance(self):
        """Gain importance per feature, normalized to sum to one."""
        if not self._is_fitted:
            raise ValueError("Model must be trained first.")

        if self.backend == 'lightgbm':
            gain = self.booster.feature_importance(importance_type='gain', iteration=self.best_iteration)
        else:
            scores = self.booster.get_score(importance_type='gain')
            gain = [scores.get(name, 0.0) for name in self.feature_names]
        gain = np.asarray(gain, dtype=float)
        total = gain.sum()
        importance = gain / total if total > 0 else gain

        return pd.DataFrame({
            'feature': self.feature_names,
            'importance': importance
        }).sort_values('importance', ascending=False).reset_index(drop=True)

    def save(self, filepath):
        if not self._is_fitted:
            raise ValueError("Cannot save untrained model.")
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'wb') as f:
            pickle.dump(self, f)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath):
        with open(filepath, 'rb') as f:
            model = pickle.load(f)
        if not isinstance(model, cls):
            raise TypeError(f"{filepath} does not hold a {cls.__name__}")
        return model


def train_model(X_train, y_train, X_val, y_val, categorical_features=config.CATEGORICAL_COLS,
                backend=config.BACKEND, params=None, num_boost_round=config.NUM_BOOST_ROUND,
                eval_freq=config.EVAL_FREQ, early_stopping_rounds=config.EARLY_STOPPING_ROUNDS):
    """Build a model from configuration and fit it."""
    model = MeterReadingModel(
        backend=backend,
        params=params,
        num_boost_round=num_boost_round,
        eval_freq=eval_freq,
        early_stopping_rounds=early_stopping_rounds
    )
    return model.fit(X_train, y_train, X_val, y_val, categorical_features)


def plot_feature_importance(importance_df, filepath, top_n=20):
    """Save a horizontal bar chart of the ``top_n`` most important features."""
    import matplotlib.pyplot as plt

    top = importance_df.head(top_n).iloc[::-1]
    fig, ax = plt.subplots(figsize=(8, max(3, 0.35 * len(top))))
    ax.barh(top['feature'], top['importance'])
    ax.set_xlabel('Normalized gain')
    ax.set_title('Feature Importance')
    fig.tight_layout()
    Path(filepath).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(filepath)
    plt.close(fig)
    logger.info(f"Feature importance plot saved to {filepath}")
