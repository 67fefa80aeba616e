DATA_DIR = "data"
RAW_DATA_DIR = f"{DATA_DIR}/raw"
MODELS_DIR = "models"
SUBMISSIONS_DIR = "submissions"

TRAIN_FILE = "train.csv"
TEST_FILE = "test.csv"
METADATA_FILE = "building_metadata.csv"
WEATHER_TRAIN_FILE = "weather_train.csv"
WEATHER_TEST_FILE = "weather_test.csv"
SAMPLE_SUBMISSION_FILE = "sample_submission.csv"
SUBMISSION_FILE = f"{SUBMISSIONS_DIR}/submission.csv"

TARGET_COL = "meter_reading"
ID_COL = "row_id"
TIMESTAMP_COL = "timestamp"
ENTITY_KEY = "building_id"
WEATHER_KEYS = ["site_id", "timestamp"]
YEAR_BUILT_COL = "year_built"
SQUARE_FEET_COL = "square_feet"

EVENT_COLUMNS = ["building_id", "meter", "timestamp"]
METADATA_COLUMNS = ["site_id", "building_id", "primary_use", "square_feet", "year_built", "floor_count"]
WEATHER_COLUMNS = ["site_id", "timestamp"]
SUBMISSION_COLUMNS = ["row_id", "meter_reading"]

DROP_COLS = ["sea_level_pressure", "wind_direction", "wind_speed"]
CATEGORICAL_COLS = ["building_id", "site_id", "meter", "primary_use"]

SPLIT_FRACTION = 0.8
STRATIFY_GROUPS = 5
SEED = 0
N_MODELS = 1

BACKEND = "lightgbm"
MODEL_PARAMS = {
    'boosting': 'gbdt',
    'objective': 'regression',
    'metric': 'rmse',
    'num_threads': 4,
    'learning_rate': 0.05,
    'num_leaves': 40,
    'feature_fraction': 0.85,
    'lambda_l2': 2,
    'verbose': -1
}
XGB_PARAMS = {
    'objective': 'reg:squarederror',
    'eval_metric': 'rmse',
    'tree_method': 'hist',
    'grow_policy': 'lossguide',
    'nthread': 4,
    'eta': 0.05,
    'max_leaves': 40,
    'colsample_bytree': 0.85,
    'lambda': 2
}
NUM_BOOST_ROUND = 15000
EVAL_FREQ = 200
EARLY_STOPPING_ROUNDS = 200

PREDICT_BATCH_SIZE = 1_000_000
PREDICTION_DECIMALS = 2
