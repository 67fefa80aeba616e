"""
Shared synthetic data for the test suite.

The frames follow the raw file layouts: events per (building, meter, hour),
one metadata row per building, hourly weather per site with a few gaps.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from meter_forecast import config


METADATA = pd.DataFrame({
    'site_id': [0, 0, 1, 1],
    'building_id': [0, 1, 2, 3],
    'primary_use': ['Education', 'Office', 'Education', 'Lodging/residential'],
    'square_feet': [5000, 12000, 800, 30000],
    'year_built': [1975.0, 1890.0, np.nan, 2005.0],
    'floor_count': [2.0, np.nan, 1.0, 6.0]
})

# (building_id, meter) pairs with readings
METERS = [(0, 0), (1, 0), (1, 1), (2, 0), (3, 0), (3, 1)]


def _hours(start, n_hours):
    return pd.date_range(start, periods=n_hours, freq=pd.Timedelta(hours=1))


def make_weather(timestamps, rng, gap_fraction=0.05):
    frames = []
    for site in METADATA['site_id'].unique():
        hour = timestamps.hour.to_numpy()
        frames.append(pd.DataFrame({
            'site_id': site,
            'timestamp': timestamps,
            'air_temperature': 10 + 8 * np.sin(2 * np.pi * hour / 24) + rng.normal(0, 1, len(timestamps)) + 5 * site,
            'cloud_coverage': rng.randint(0, 9, len(timestamps)).astype(float),
            'dew_temperature': rng.normal(5, 2, len(timestamps)),
            'precip_depth_1_hr': rng.exponential(1.0, len(timestamps)),
            'sea_level_pressure': rng.normal(1015, 5, len(timestamps)),
            'wind_direction': rng.randint(0, 360, len(timestamps)).astype(float),
            'wind_speed': rng.exponential(3.0, len(timestamps))
        }))
    weather = pd.concat(frames, ignore_index=True)
    keep = rng.uniform(size=len(weather)) >= gap_fraction
    return weather[keep].reset_index(drop=True)


def make_events(timestamps, rng, with_target=True):
    frames = []
    sqft = METADATA.set_index('building_id')['square_feet']
    for building_id, meter in METERS:
        hour = timestamps.hour.to_numpy()
        frame = pd.DataFrame({
            'building_id': building_id,
            'meter': meter,
            'timestamp': timestamps
        })
        if with_target:
            base = sqft[building_id] / 1000 * (1.5 + np.sin(2 * np.pi * hour / 24)) + 3 * meter
            frame['meter_reading'] = np.abs(base + rng.normal(0, 0.5, len(timestamps)))
        frames.append(frame)
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def raw_tables():
    """Raw train and test frames as they come out of the loader."""
    rng = np.random.RandomState(42)
    train_hours = _hours("2016-01-01", 10 * 24)
    test_hours = _hours("2017-01-01", 3 * 24)

    test_df = make_events(test_hours, rng, with_target=False)
    test_df.insert(0, 'row_id', np.arange(len(test_df)))

    return {
        'train': make_events(train_hours, rng),
        'test': test_df,
        'metadata': METADATA.copy(),
        'weather_train': make_weather(train_hours, rng),
        'weather_test': make_weather(test_hours, rng),
        'sample_submission': pd.DataFrame({'row_id': np.arange(len(test_df)), 'meter_reading': 0})
    }


@pytest.fixture
def raw_data_dir(tmp_path, raw_tables):
    """The raw tables written as CSV files under the configured names."""
    data_dir = tmp_path / "raw"
    data_dir.mkdir()
    files = {
        'train': config.TRAIN_FILE,
        'test': config.TEST_FILE,
        'metadata': config.METADATA_FILE,
        'weather_train': config.WEATHER_TRAIN_FILE,
        'weather_test': config.WEATHER_TEST_FILE,
        'sample_submission': config.SAMPLE_SUBMISSION_FILE
    }
    for name, filename in files.items():
        raw_tables[name].to_csv(data_dir / filename, index=False)
    return data_dir
