"""
Tests for the stratified partition and gradient-boosted model training.
"""

import numpy as np
import pandas as pd
import pytest

from meter_forecast.errors import ConfigurationError
from meter_forecast.model_trainer import (
    MeterReadingModel,
    partition_dataset,
    plot_feature_importance,
    train_model,
)

LGB_TEST_PARAMS = {
    'objective': 'regression',
    'metric': 'rmse',
    'learning_rate': 0.1,
    'num_leaves': 15,
    'min_data_in_leaf': 5,
    'num_threads': 1,
    'seed': 0,
    'verbose': -1
}

XGB_TEST_PARAMS = {
    'objective': 'reg:squarederror',
    'eval_metric': 'rmse',
    'tree_method': 'hist',
    'grow_policy': 'lossguide',
    'max_leaves': 15,
    'eta': 0.1,
    'nthread': 1,
    'seed': 0
}


def make_training_frame(n=600, seed=0, noise_only=False):
    rng = np.random.RandomState(seed)
    X = pd.DataFrame({
        'building_id': rng.randint(0, 6, n).astype('int32'),
        'meter': rng.randint(0, 2, n),
        'hour': rng.randint(0, 24, n).astype('int8'),
        'air_temperature': rng.normal(15, 6, n),
        'square_feet': np.log1p(rng.uniform(500, 50000, n))
    })
    if noise_only:
        y = pd.Series(rng.normal(3, 1, n))
    else:
        y = np.log1p(
            X['building_id'] * 10 + X['meter'] * 25 + np.sin(2 * np.pi * X['hour'] / 24) * 5
            + np.maximum(X['air_temperature'] - 15, 0) + rng.normal(0, 1, n) + 20
        )
    return X, y


def split(X, y, seed=0):
    train_idx, val_idx = partition_dataset(y, 0.8, seed=seed)
    return X.iloc[train_idx], y.iloc[train_idx], X.iloc[val_idx], y.iloc[val_idx]


class TestPartitionDataset:
    """Tests for partition_dataset."""

    @pytest.fixture
    def target(self):
        rng = np.random.RandomState(1)
        return pd.Series(np.log1p(rng.exponential(100, 1000)))

    @pytest.mark.parametrize("fraction", [0.5, 0.8, 0.9])
    @pytest.mark.parametrize("seed", [0, 7])
    def test_disjoint_and_covering(self, target, fraction, seed):
        train_idx, val_idx = partition_dataset(target, fraction, seed=seed)

        assert len(np.intersect1d(train_idx, val_idx)) == 0
        np.testing.assert_array_equal(np.union1d(train_idx, val_idx), np.arange(len(target)))
        assert len(train_idx) + len(val_idx) == len(target)
        assert len(train_idx) / len(target) == pytest.approx(fraction, abs=0.01)

    @pytest.mark.parametrize("n", [10, 20, 24, 30])
    @pytest.mark.parametrize("seed", [0, 7])
    def test_small_target_keeps_validation_rows(self, n, seed):
        target = np.log1p(np.arange(n))
        train_idx, val_idx = partition_dataset(target, 0.8, seed=seed)

        assert len(val_idx) > 0
        assert len(np.intersect1d(train_idx, val_idx)) == 0
        np.testing.assert_array_equal(np.union1d(train_idx, val_idx), np.arange(n))
        assert len(train_idx) / n == pytest.approx(0.8, abs=0.05)

    @pytest.mark.parametrize("n, fraction", [(3, 0.8), (10, 0.9)])
    def test_too_few_rows_to_split(self, n, fraction):
        with pytest.raises(ConfigurationError, match="too few"):
            partition_dataset(np.log1p(np.arange(n)), fraction)

    def test_same_seed_same_split(self, target):
        first = partition_dataset(target, 0.8, seed=3)
        second = partition_dataset(target, 0.8, seed=3)

        np.testing.assert_array_equal(first[0], second[0])
        np.testing.assert_array_equal(first[1], second[1])

    def test_different_seed_different_split(self, target):
        first, _ = partition_dataset(target, 0.8, seed=3)
        second, _ = partition_dataset(target, 0.8, seed=4)

        assert not np.array_equal(first, second)

    def test_stratified_on_target(self, target):
        train_idx, val_idx = partition_dataset(target, 0.8, seed=0)
        edges = target.quantile([0.2, 0.4, 0.6, 0.8]).to_numpy()

        train_share = np.bincount(np.searchsorted(edges, target.iloc[train_idx]), minlength=5) / len(train_idx)
        val_share = np.bincount(np.searchsorted(edges, target.iloc[val_idx]), minlength=5) / len(val_idx)

        np.testing.assert_allclose(train_share, 0.2, atol=0.01)
        np.testing.assert_allclose(val_share, 0.2, atol=0.02)

    def test_constant_target(self):
        train_idx, val_idx = partition_dataset(np.zeros(10), 0.8, seed=0)

        assert len(train_idx) == 8
        assert len(val_idx) == 2

    @pytest.mark.parametrize("fraction", [0, 1, 1.5, -0.2])
    def test_fraction_out_of_range(self, target, fraction):
        with pytest.raises(ConfigurationError, match="split fraction"):
            partition_dataset(target, fraction)


class TestMeterReadingModel:
    """Tests for MeterReadingModel."""

    @pytest.fixture
    def data(self):
        return split(*make_training_frame())

    @pytest.fixture
    def lgb_model(self, data):
        X_train, y_train, X_val, y_val = data
        return train_model(
            X_train, y_train, X_val, y_val,
            categorical_features=['building_id', 'meter'],
            backend='lightgbm',
            params=LGB_TEST_PARAMS,
            num_boost_round=200,
            eval_freq=50,
            early_stopping_rounds=10
        )

    def test_lightgbm_fit_predict(self, lgb_model, data):
        X_train, y_train, X_val, y_val = data
        preds = lgb_model.predict(X_val)

        assert preds.shape == (len(X_val),)
        assert 0 < lgb_model.best_iteration <= 200
        assert lgb_model.training_info['validation_rmse'] < y_val.std()
        assert lgb_model.training_info['n_train'] == len(X_train)

    def test_feature_importance(self, lgb_model, data):
        importance = lgb_model.feature_importance()

        assert set(importance['feature']) == set(data[0].columns)
        assert importance['importance'].sum() == pytest.approx(1.0)
        assert importance['importance'].is_monotonic_decreasing

    def test_early_stopping_halts(self):
        X_train, y_train, X_val, y_val = split(*make_training_frame(noise_only=True))
        model = MeterReadingModel(
            backend='lightgbm', params=LGB_TEST_PARAMS,
            num_boost_round=1000, eval_freq=100, early_stopping_rounds=5
        ).fit(X_train, y_train, X_val, y_val)

        assert model.booster.current_iteration() < 1000
        assert model.best_iteration <= model.booster.current_iteration()

    def test_fit_on_small_partition(self):
        X_train, y_train, X_val, y_val = split(*make_training_frame(n=20))
        model = MeterReadingModel(
            backend='lightgbm', params=LGB_TEST_PARAMS,
            num_boost_round=20, eval_freq=10, early_stopping_rounds=5
        ).fit(X_train, y_train, X_val, y_val)

        assert len(X_val) > 0
        assert model.predict(X_val).shape == (len(X_val),)

    def test_xgboost_fit_predict(self, data):
        X_train, y_train, X_val, y_val = data
        model = train_model(
            X_train, y_train, X_val, y_val,
            categorical_features=['building_id'],
            backend='xgboost',
            params=XGB_TEST_PARAMS,
            num_boost_round=200,
            eval_freq=50,
            early_stopping_rounds=10
        )

        assert model.predict(X_val).shape == (len(X_val),)
        assert model.training_info['validation_rmse'] < y_val.std()
        assert model.feature_importance()['importance'].sum() == pytest.approx(1.0)

    def test_non_numeric_column(self, data):
        X_train, y_train, X_val, y_val = data
        model = MeterReadingModel(params=LGB_TEST_PARAMS)

        with pytest.raises(ConfigurationError, match="non-numeric"):
            model.fit(X_train.assign(primary_use='Office'), y_train, X_val.assign(primary_use='Office'), y_val)

    def test_unknown_categorical_feature(self, data):
        X_train, y_train, X_val, y_val = data
        model = MeterReadingModel(params=LGB_TEST_PARAMS)

        with pytest.raises(ConfigurationError, match="primary_use"):
            model.fit(X_train, y_train, X_val, y_val, categorical_features=['primary_use'])

    def test_mismatched_validation_columns(self, data):
        X_train, y_train, X_val, y_val = data
        model = MeterReadingModel(params=LGB_TEST_PARAMS)

        with pytest.raises(ConfigurationError, match="different columns"):
            model.fit(X_train, y_train, X_val.drop(columns=['hour']), y_val)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="backend"):
            MeterReadingModel(backend='catboost')

    def test_predict_before_fit(self, data):
        with pytest.raises(ValueError, match="must be trained"):
            MeterReadingModel(params=LGB_TEST_PARAMS).predict(data[2])

    def test_save_load(self, lgb_model, data, tmp_path):
        path = tmp_path / "models" / "model.pkl"
        lgb_model.save(str(path))
        loaded = MeterReadingModel.load(str(path))

        np.testing.assert_allclose(loaded.predict(data[2]), lgb_model.predict(data[2]))
        assert loaded.best_iteration == lgb_model.best_iteration

    def test_plot_feature_importance(self, lgb_model, tmp_path):
        import matplotlib

        backend = matplotlib.get_backend()
        path = tmp_path / "plots" / "importance.png"
        plot_feature_importance(lgb_model.feature_importance(), str(path))

        assert path.exists()
        assert matplotlib.get_backend() == backend
