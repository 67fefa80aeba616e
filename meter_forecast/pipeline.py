import gc
import logging
import os

import numpy as np
import pandas as pd

from meter_forecast import config
from meter_forecast.data_loader import load_test_data, load_train_data
from meter_forecast.errors import ConfigurationError, InputDataError
from meter_forecast.feature_engineering import CategoricalEncoder, derive_features, merge_tables
from meter_forecast.model_trainer import partition_dataset, plot_feature_importance, train_model
from meter_forecast.predict import make_predictions, write_submission

logger = logging.getLogger(__name__)


class EnergyPipeline:
    """
    One batch run: build features, train, predict, write the submission.

    All state of a run (fitted encoder, trained models, feature columns,
    importance ranking) lives on the instance; build a new instance for
    every run.
    """

    def __init__(
        self,
        data_dir=config.RAW_DATA_DIR,
        models_dir=config.MODELS_DIR,
        submission_file=config.SUBMISSION_FILE,
        entity_key=config.ENTITY_KEY,
        weather_keys=config.WEATHER_KEYS,
        timestamp_col=config.TIMESTAMP_COL,
        target_col=config.TARGET_COL,
        id_col=config.ID_COL,
        drop_cols=config.DROP_COLS,
        categorical_cols=config.CATEGORICAL_COLS,
        split_fraction=config.SPLIT_FRACTION,
        seed=config.SEED,
        n_models=config.N_MODELS,
        backend=config.BACKEND,
        model_params=None,
        num_boost_round=config.NUM_BOOST_ROUND,
        eval_freq=config.EVAL_FREQ,
        early_stopping_rounds=config.EARLY_STOPPING_ROUNDS,
        nrows=None,
        batch_size=config.PREDICT_BATCH_SIZE
    ):
        if n_models < 1:
            raise ConfigurationError("train", f"n_models must be at least 1, got {n_models}")

        self.data_dir = data_dir
        self.models_dir = models_dir
        self.submission_file = submission_file
        self.entity_key = entity_key
        self.weather_keys = list(weather_keys)
        self.timestamp_col = timestamp_col
        self.target_col = target_col
        self.id_col = id_col
        self.drop_cols = list(drop_cols)
        self.categorical_cols = list(categorical_cols)
        self.split_fraction = split_fraction
        self.seed = seed
        self.n_models = n_models
        self.backend = backend
        self.model_params = model_params
        self.num_boost_round = num_boost_round
        self.eval_freq = eval_freq
        self.early_stopping_rounds = early_stopping_rounds
        self.nrows = nrows
        self.batch_size = batch_size

        self.encoder = CategoricalEncoder()
        self.models = []
        self.feature_cols = []
        self.feature_importance = None
        self.validation_scores = []

    def _model_params(self, k):
        base = self.model_params
        if base is None:
            base = config.MODEL_PARAMS if self.backend == 'lightgbm' else config.XGB_PARAMS
        return {**base, 'seed': self.seed + k}

    def prepare_features(self, events, metadata, weather, fit_encoder=False):
        """
        Merge, derive and encode one event table.

        The encoder is fitted only on the training table; later calls reuse
        its mapping.
        """
        merged = merge_tables(events, metadata, weather, entity_key=self.entity_key,
                              weather_keys=self.weather_keys, timestamp_col=self.timestamp_col)
        engineered = derive_features(merged, drop_cols=self.drop_cols, timestamp_col=self.timestamp_col)
        del merged
        gc.collect()

        if fit_encoder:
            return self.encoder.fit_transform(engineered)
        return self.encoder.transform(engineered)

    def train(self, train_df, metadata_df, weather_df):
        """Train ``n_models`` models, each on its own seeded partition."""
        logger.info("--- Preparing Training Data ---")
        X = self.prepare_features(train_df, metadata_df, weather_df, fit_encoder=True)
        if self.target_col not in X.columns:
            raise InputDataError("train", f"training table has no target column '{self.target_col}'")
        y = np.log1p(X.pop(self.target_col))
        self.feature_cols = list(X.columns)
        logger.info(f"Features used: {self.feature_cols}")

        self.models = []
        self.validation_scores = []
        importances = []
        for k in range(self.n_models):
            train_idx, val_idx = partition_dataset(y, self.split_fraction, seed=self.seed + k)
            X_train, X_val = X.iloc[train_idx], X.iloc[val_idx]
            y_train, y_val = y.iloc[train_idx], y.iloc[val_idx]

            logger.info(f"Training model {k + 1}/{self.n_models}")
            model = train_model(
                X_train, y_train, X_val, y_val,
                categorical_features=self.categorical_cols,
                backend=self.backend,
                params=self._model_params(k),
                num_boost_round=self.num_boost_round,
                eval_freq=self.eval_freq,
                early_stopping_rounds=self.early_stopping_rounds
            )
            del X_train, X_val, y_train, y_val
            gc.collect()

            self.models.append(model)
            self.validation_scores.append(model.training_info['validation_rmse'])
            importances.append(model.feature_importance())

        del X, y
        gc.collect()

        self.feature_importance = (
            pd.concat(importances)
            .groupby('feature')['importance'].mean()
            .sort_values(ascending=False)
            .reset_index()
        )
        logger.info(f"Feature Importance:\n{self.feature_importance.head(15).to_string(index=False)}")
        logger.info(f"Validation RMSE per model: {[round(s, 4) for s in self.validation_scores]}")
        return self.models

    def save_artifacts(self):
        """Persist models, the encoder and the importance ranking under ``models_dir``."""
        os.makedirs(self.models_dir, exist_ok=True)
        for k, model in enumerate(self.models):
            model.save(os.path.join(self.models_dir, f"{self.backend}_model_{k}.pkl"))
        self.encoder.save(os.path.join(self.models_dir, "categorical_encoder.pkl"))
        if self.feature_importance is not None:
            self.feature_importance.to_csv(os.path.join(self.models_dir, "feature_importance.csv"), index=False)
            plot_feature_importance(self.feature_importance, os.path.join(self.models_dir, "feature_importance.png"))

    def generate_submission(self, test_df, metadata_df, weather_df, sample_submission):
        """Build test features with the training encoder and predict in template order."""
        if not self.models:
            raise ConfigurationError("predict", "no trained models; call train() first")

        logger.info("--- Preparing Test Data ---")
        X_test = self.prepare_features(test_df, metadata_df, weather_df)
        if self.id_col not in X_test.columns:
            raise InputDataError("predict", f"test table has no '{self.id_col}' column")
        row_ids = X_test.pop(self.id_col)

        missing = [col for col in self.feature_cols if col not in X_test.columns]
        extra = [col for col in X_test.columns if col not in self.feature_cols]
        if missing or extra:
            raise ConfigurationError(
                "predict", f"test features differ from training: missing {missing}, unexpected {extra}"
            )
        X_test = X_test[self.feature_cols]

        return make_predictions(self.models, X_test, row_ids, sample_submission,
                                id_col=self.id_col, target_col=self.target_col,
                                batch_size=self.batch_size)

    def run(self):
        """Load, train, predict and write the submission file."""
        logger.info("Starting the meter reading pipeline...")
        train_df, metadata_df, weather_df = load_train_data(self.data_dir, nrows=self.nrows)
        self.train(train_df, metadata_df, weather_df)
        del train_df, weather_df
        gc.collect()
        self.save_artifacts()

        test_df, weather_df, sample_submission = load_test_data(self.data_dir, nrows=self.nrows)
        submission = self.generate_submission(test_df, metadata_df, weather_df, sample_submission)
        del test_df, weather_df, metadata_df
        gc.collect()

        write_submission(submission, self.submission_file)
        logger.info("Pipeline finished successfully!")
        return submission
