import argparse
import logging
import sys

from meter_forecast import config
from meter_forecast.pipeline import EnergyPipeline

logger = logging.getLogger(__name__)


def setup_logging(level="INFO", log_file=None):
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Train a meter reading model and write a submission")
    parser.add_argument("--data-dir", default=config.RAW_DATA_DIR, help="Directory holding the raw CSV files")
    parser.add_argument("--models-dir", default=config.MODELS_DIR, help="Where models and importance plots go")
    parser.add_argument("--output", default=config.SUBMISSION_FILE, help="Submission CSV path")
    parser.add_argument("--nrows", type=int, default=None, help="Limit event rows read (optional)")
    parser.add_argument("--backend", choices=["lightgbm", "xgboost"], default=config.BACKEND)
    parser.add_argument("--seed", type=int, default=config.SEED)
    parser.add_argument("--split-fraction", type=float, default=config.SPLIT_FRACTION)
    parser.add_argument("--n-models", type=int, default=config.N_MODELS, help="Models to train and average")
    parser.add_argument("--num-boost-round", type=int, default=config.NUM_BOOST_ROUND)
    parser.add_argument("--early-stopping-rounds", type=int, default=config.EARLY_STOPPING_ROUNDS)
    parser.add_argument("--eval-freq", type=int, default=config.EVAL_FREQ)
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=None)
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)

    try:
        pipeline = EnergyPipeline(
            data_dir=args.data_dir,
            models_dir=args.models_dir,
            submission_file=args.output,
            split_fraction=args.split_fraction,
            seed=args.seed,
            n_models=args.n_models,
            backend=args.backend,
            num_boost_round=args.num_boost_round,
            eval_freq=args.eval_freq,
            early_stopping_rounds=args.early_stopping_rounds,
            nrows=args.nrows
        )
        pipeline.run()
    except Exception as e:
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
