import logging
import pickle
from pathlib import Path

import numpy as np
import pandas as pd

from meter_forecast import config
from meter_forecast.errors import ConfigurationError, InputDataError

logger = logging.getLogger(__name__)


def _require_columns(df, columns, table, stage):
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise InputDataError(stage, f"{table} table is missing columns {missing}")


def _as_datetime(df, timestamp_col):
    if timestamp_col not in df.columns or pd.api.types.is_datetime64_any_dtype(df[timestamp_col]):
        return df
    return df.assign(**{timestamp_col: pd.to_datetime(df[timestamp_col])})


def merge_tables(events, metadata, weather, entity_key=config.ENTITY_KEY,
                 weather_keys=config.WEATHER_KEYS, timestamp_col=config.TIMESTAMP_COL):
    """
    Annotate every event row with its building metadata and the weather
    reading for its site and hour.

    Metadata is mandatory: an event whose building has no metadata row is an
    input error. Weather may have gaps; unmatched rows keep NaN readings.
    The result preserves the event row order.
    """
    logger.info("Merging events with metadata and weather...")
    weather_keys = list(weather_keys)
    _require_columns(events, [entity_key], "events", "merge")
    _require_columns(metadata, [entity_key], "metadata", "merge")
    _require_columns(weather, weather_keys, "weather", "merge")

    unmatched = pd.Index(events[entity_key].unique()).difference(pd.Index(metadata[entity_key]))
    if len(unmatched) > 0:
        raise InputDataError(
            "merge",
            f"{len(unmatched)} {entity_key} values have no metadata, e.g. {unmatched[:5].tolist()}"
        )
    if metadata[entity_key].duplicated().any():
        dupes = metadata.loc[metadata[entity_key].duplicated(), entity_key].unique()[:5].tolist()
        raise InputDataError("merge", f"metadata has duplicate {entity_key} rows, e.g. {dupes}")
    if weather.duplicated(subset=weather_keys).any():
        raise InputDataError("merge", f"weather has duplicate rows for keys {weather_keys}")

    events = _as_datetime(events, timestamp_col)
    weather = _as_datetime(weather, timestamp_col)

    merged = events.merge(metadata, on=entity_key, how='left')
    _require_columns(merged, weather_keys, "events+metadata", "merge")
    merged = merged.merge(weather, on=weather_keys, how='left')

    reading_cols = [col for col in weather.columns if col not in weather_keys]
    if reading_cols:
        gaps = int(merged[reading_cols].isna().all(axis=1).sum())
        if gaps:
            logger.warning(f"{gaps} of {len(merged)} rows have no matching weather reading")

    logger.info(f"Merged table shape: {merged.shape}")
    return merged


def create_temporal_features(df, timestamp_col=config.TIMESTAMP_COL):
    """
    Decompose the timestamp into calendar features.

    ``weekday`` runs 1-7 with Sunday = 1. ``season`` is the quarter of a
    fiscal year starting in December: Dec-Feb = 1, Mar-May = 2,
    Jun-Aug = 3, Sep-Nov = 4.
    """
    _require_columns(df, [timestamp_col], "merged", "derive")
    df = df.copy()
    ts = pd.to_datetime(df[timestamp_col])
    if ts.isna().any():
        raise InputDataError("derive", f"{int(ts.isna().sum())} rows have no {timestamp_col}")

    df['weekday'] = ((ts.dt.dayofweek + 1) % 7 + 1).astype('int8')
    df['hour'] = ts.dt.hour.astype('int8')
    df['season'] = (ts.dt.month % 12 // 3 + 1).astype('int8')
    return df


def derive_features(df, drop_cols=config.DROP_COLS, timestamp_col=config.TIMESTAMP_COL,
                    year_built_col=config.YEAR_BUILT_COL, square_feet_col=config.SQUARE_FEET_COL):
    """
    Turn a merged table into the engineered table fed to the trainer.

    ``year_built`` becomes an offset from 1900 (pre-1900 buildings go
    negative) and ``square_feet`` is log1p-compressed. The timestamp is
    discarded once the calendar features exist.
    """
    logger.info("Deriving features...")
    drop_cols = list(drop_cols)
    missing = [col for col in drop_cols if col not in df.columns]
    if missing:
        raise ConfigurationError("derive", f"columns to drop are not in the table: {missing}")
    _require_columns(df, [year_built_col, square_feet_col], "merged", "derive")

    df = create_temporal_features(df.drop(columns=drop_cols), timestamp_col)
    df[year_built_col] = df[year_built_col] - 1900
    df[square_feet_col] = np.log1p(df[square_feet_col])
    df = df.drop(columns=[timestamp_col])

    logger.info(f"Engineered table shape: {df.shape}")
    return df


def _is_text(dtype):
    return (pd.api.types.is_object_dtype(dtype)
            or pd.api.types.is_string_dtype(dtype)
            or isinstance(dtype, pd.CategoricalDtype))


class CategoricalEncoder:
    """
    Integer coding for text-valued columns.

    The sorted value domain of every text column is learned once, on the
    training table, and reused verbatim for any later table so the same
    text always maps to the same code. Codes are 0-based ranks in that
    domain; missing and unseen values map to -1.
    """

    def __init__(self):
        self.categories = {}
        self._is_fitted = False

    def fit(self, df):
        self.categories = {}
        for col in df.columns:
            if _is_text(df[col].dtype):
                values = df[col].dropna().astype(object).unique().tolist()
                self.categories[col] = sorted(values, key=str)
        self._is_fitted = True
        logger.info(f"Learned categorical domains for {list(self.categories)}")
        return self

    def transform(self, df):
        if not self._is_fitted:
            raise ValueError("Encoder must be fitted before transform. Call fit() first.")

        missing = [col for col in self.categories if col not in df.columns]
        if missing:
            raise ConfigurationError("encode", f"encoded columns missing from table: {missing}")
        unknown = [col for col in df.columns if _is_text(df[col].dtype) and col not in self.categories]
        if unknown:
            raise ConfigurationError("encode", f"text columns were not seen at fit time: {unknown}")

        df = df.copy()
        for col, categories in self.categories.items():
            values = df[col].astype(object)
            codes = pd.Categorical(values, categories=categories).codes.astype('int32')
            unseen = int(((codes == -1) & values.notna().to_numpy()).sum())
            if unseen:
                logger.warning(f"{unseen} values in '{col}' were not seen at fit time; coded as -1")
            df[col] = codes
        return df

    def fit_transform(self, df):
        return self.fit(df).transform(df)

    def save(self, filepath):
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'wb') as f:
            pickle.dump({'categories': self.categories, '_is_fitted': self._is_fitted}, f)
        logger.info(f"Encoder saved to {filepath}")

    @classmethod
    def load(cls, filepath):
        with open(filepath, 'rb') as f:
            state = pickle.load(f)
        encoder = cls()
        encoder.categories = state['categories']
        encoder._is_fitted = state['_is_fitted']
        return encoder
