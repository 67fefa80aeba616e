import logging
import os

import pandas as pd

from meter_forecast import config
from meter_forecast.errors import InputDataError

logger = logging.getLogger(__name__)


def read_table(path, required_columns=(), nrows=None, parse_dates=None):
    """
    Read one delimiter-separated table and check it carries the columns the
    pipeline relies on.

    Args:
        path: CSV file with a header row
        required_columns: Columns that must be present
        nrows: Read at most this many rows (development runs)
        parse_dates: Columns to parse as datetimes

    Raises:
        FileNotFoundError: If the file does not exist
        InputDataError: If a required column is missing
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Data file not found: {path}")

    df = pd.read_csv(path, nrows=nrows, parse_dates=parse_dates)
    missing = [col for col in required_columns if col not in df.columns]
    if missing:
        raise InputDataError("load", f"{path} is missing required columns {missing}")

    logger.info(f"Loaded {os.path.basename(path)}: {df.shape[0]} rows x {df.shape[1]} columns")
    return df


def load_train_data(data_dir=config.RAW_DATA_DIR, nrows=None):
    """Load the training events together with building metadata and training weather."""
    logger.info("Loading training data...")
    train_df = read_table(
        os.path.join(data_dir, config.TRAIN_FILE),
        required_columns=config.EVENT_COLUMNS + [config.TARGET_COL],
        nrows=nrows,
        parse_dates=[config.TIMESTAMP_COL],
    )
    metadata_df = read_table(
        os.path.join(data_dir, config.METADATA_FILE),
        required_columns=config.METADATA_COLUMNS,
    )
    weather_df = read_table(
        os.path.join(data_dir, config.WEATHER_TRAIN_FILE),
        required_columns=config.WEATHER_COLUMNS,
        parse_dates=[config.TIMESTAMP_COL],
    )
    return train_df, metadata_df, weather_df


def load_test_data(data_dir=config.RAW_DATA_DIR, nrows=None):
    """
    Load the test events, test weather and the submission template.

    ``nrows`` limits both the test events and the template, whose rows are
    aligned by ``row_id``.
    """
    logger.info("Loading test data...")
    test_df = read_table(
        os.path.join(data_dir, config.TEST_FILE),
        required_columns=[config.ID_COL] + config.EVENT_COLUMNS,
        nrows=nrows,
        parse_dates=[config.TIMESTAMP_COL],
    )
    weather_df = read_table(
        os.path.join(data_dir, config.WEATHER_TEST_FILE),
        required_columns=config.WEATHER_COLUMNS,
        parse_dates=[config.TIMESTAMP_COL],
    )
    sample_submission_df = read_table(
        os.path.join(data_dir, config.SAMPLE_SUBMISSION_FILE),
        required_columns=config.SUBMISSION_COLUMNS,
        nrows=nrows,
    )
    return test_df, weather_df, sample_submission_df
