#!/usr/bin/env python3
"""
store-forecast command line.

Reads a long CSV (store, date, value[, block, region, prefecture]), fits every store in
two passes, writes models/forecast/backtest CSVs plus a manifest and a text report into
output/<timestamp>/, then prints the report.
"""

import logging
import os
from dataclasses import asdict, replace
from pathlib import Path
from typing import Optional, Tuple

import pandas as pd

from .backtest import run_backtest
from .batch import forecasts_to_frame, models_to_frame, prepare_entities, run_batch
from .config import BatchParams, EngineParams, get_default_params
from .report import assemble_text_report, build_manifest_dict, build_model_comparison
from .timeline import normalize_month
from .utils import (
    build_effective_parameters,
    canonical_json_hash,
    ensure_run_dir,
    normalize_abs_posix,
    write_manifest,
)

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def build_run_identity(
    input_path: Path, engine: EngineParams, batch: BatchParams
) -> tuple[str, str, str, dict]:
    """
    (abs_input_posix, short_hash, full_hash, effective_params) for a run.
    The hash covers the absolute input path and every effective parameter.
    """
    abs_input_posix = normalize_abs_posix(input_path)
    effective_params = build_effective_parameters(engine, batch)
    short_hash, full_hash = canonical_json_hash(
        {"input": abs_input_posix, "params": effective_params}
    )
    return abs_input_posix, short_hash, full_hash, effective_params


def load_input_csv(input_path: Path) -> pd.DataFrame:
    """Read the input CSV as text; prepare_entities coerces the value column."""
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")
    df = pd.read_csv(input_path, dtype=str)
    df.columns = [str(c).strip().lower() for c in df.columns]
    logger.info("Loaded %d rows from %s", len(df), input_path)
    return df


def _orchestrate(
    input_path: Path, engine: EngineParams, batch: BatchParams
) -> Path:
    """
    Run the full pipeline for one input file and return the run directory.
    Split from main() so the CLI can remain thin and tests can call this directly.
    """
    run_output_dir = ensure_run_dir(batch.output_dir or "output")
    abs_input_posix, short_hash, full_hash, effective_params = build_run_identity(
        input_path, engine, batch
    )

    df = load_input_csv(input_path)
    entities, global_max_date = prepare_entities(df, batch.metadata_columns)
    result = run_batch(entities, global_max_date, engine, batch)

    artifact_paths: list[str] = []

    models_path = run_output_dir / f"models-{short_hash}.csv"
    models_to_frame(result.models).to_csv(models_path, index=False)
    artifact_paths.append(normalize_abs_posix(models_path))

    forecast_path = run_output_dir / f"forecast-{short_hash}.csv"
    forecasts_to_frame(result.models, batch.horizon, engine).to_csv(
        forecast_path, index=False
    )
    artifact_paths.append(normalize_abs_posix(forecast_path))

    backtest_df: Optional[pd.DataFrame] = None
    if batch.holdout > 0:
        backtest_df = run_backtest(
            entities, batch.holdout, engine, result.global_summary
        )
        backtest_path = run_output_dir / f"backtest-{short_hash}.csv"
        backtest_df.to_csv(backtest_path, index=False)
        artifact_paths.append(normalize_abs_posix(backtest_path))

    models = list(result.models.values())
    counts = {
        "total_input_rows": len(df),
        "entity_count": len(models),
        "pass_one_count": len(result.pass_one),
        "pass_two_count": len(result.pass_two),
        "insufficient_count": sum(1 for m in models if m.insufficient_data),
        "error_count": sum(1 for m in models if m.error),
    }
    manifest = build_manifest_dict(
        abs_input_posix=abs_input_posix,
        counts=counts,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths=artifact_paths,
    )
    write_manifest(run_output_dir / f"manifest-{short_hash}.json", manifest)

    dominant_mode, table_text = build_model_comparison(result)
    report = assemble_text_report(result, table_text, dominant_mode, backtest_df)

    report_path = run_output_dir / f"report-{short_hash}.txt"
    try:
        report_path.write_text(report, encoding="utf-8")
    except Exception:
        logger.exception("Failed to write textual report to %s", str(report_path))

    print(report)
    return run_output_dir


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="store-forecast",
        description="Per-store growth-curve fitting and monthly forecasting.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also STORE_FORECAST_DEBUG=1).",
    )
    parser.add_argument(
        "--input",
        dest="input_path",
        required=True,
        help="CSV with columns store,date,value and optional block,region,prefecture.",
    )

    # Batch options
    parser.add_argument("--horizon", type=int, default=None, help="Months to forecast.")
    parser.add_argument(
        "--holdout",
        type=int,
        default=None,
        help="Months held out for the backtest (0 disables it).",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Worker processes per pass (1 fits sequentially).",
    )
    parser.add_argument(
        "--output-dir", default=None, help="Base directory for run output."
    )

    # Engine options
    parser.add_argument("--iqr-k", type=float, default=None, help="IQR fence multiplier.")
    parser.add_argument(
        "--min-valid-months",
        type=int,
        default=None,
        help="Valid months needed for a full (non-startup) fit.",
    )
    parser.add_argument(
        "--shift-threshold",
        type=float,
        default=None,
        help="Relative level change that counts as a break.",
    )
    parser.add_argument(
        "--secondary-threshold",
        type=float,
        default=None,
        help="Relative level change for the second break of a dual-shift fit.",
    )
    parser.add_argument(
        "--event-month",
        action="append",
        default=None,
        help="YYYY-MM of a known market-wide event (repeatable; replaces the defaults).",
    )
    parser.add_argument(
        "--max-iterations", type=int, default=None, help="Nelder-Mead iteration cap."
    )
    parser.add_argument(
        "--nudge-trim",
        type=float,
        default=None,
        help="Fraction trimmed from each end for the residual nudge mean.",
    )
    parser.add_argument(
        "--active-days",
        type=int,
        default=None,
        help="Days behind the latest month after which a store is inactive.",
    )
    parser.add_argument(
        "--interval-z", type=float, default=None, help="Forecast band half-width in std devs."
    )
    return parser


def _args_to_params(args) -> Tuple[EngineParams, BatchParams]:
    """
    Merge CLI args over defaults to build parameter objects.
    Only override values explicitly provided by user; otherwise keep defaults.
    """
    d_engine, d_batch = get_default_params()

    def get_arg_or_default(arg_name, default):
        return (
            getattr(args, arg_name, None)
            if getattr(args, arg_name, None) is not None
            else default
        )

    event_months = d_engine.event_months
    if getattr(args, "event_month", None):
        event_months = tuple(normalize_month(m) for m in args.event_month)

    engine = replace(
        d_engine,
        iqr_k=get_arg_or_default("iqr_k", d_engine.iqr_k),
        min_valid_months=get_arg_or_default("min_valid_months", d_engine.min_valid_months),
        shift_threshold=get_arg_or_default("shift_threshold", d_engine.shift_threshold),
        secondary_threshold=get_arg_or_default(
            "secondary_threshold", d_engine.secondary_threshold
        ),
        event_months=event_months,
        max_iterations=get_arg_or_default("max_iterations", d_engine.max_iterations),
        nudge_trim=get_arg_or_default("nudge_trim", d_engine.nudge_trim),
        active_days=get_arg_or_default("active_days", d_engine.active_days),
        interval_z=get_arg_or_default("interval_z", d_engine.interval_z),
    )

    horizon = get_arg_or_default("horizon", d_batch.horizon)
    holdout = get_arg_or_default("holdout", d_batch.holdout)
    max_workers = get_arg_or_default("max_workers", d_batch.max_workers)
    if horizon <= 0:
        raise ValueError("Invalid --horizon: must be a positive integer")
    if holdout < 0:
        raise ValueError("Invalid --holdout: must be a non-negative integer")
    if max_workers < 1:
        raise ValueError("Invalid --max-workers: must be at least 1")
    if not 0.0 <= engine.nudge_trim < 0.5:
        raise ValueError("Invalid --nudge-trim: must be in [0, 0.5)")

    batch = replace(
        d_batch,
        horizon=horizon,
        holdout=holdout,
        max_workers=max_workers,
        output_dir=get_arg_or_default("output_dir", d_batch.output_dir),
    )
    return engine, batch


def main(argv: Optional[list] = None) -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import sys

    argv = sys.argv[1:] if argv is None else list(argv)

    # --print-defaults does not require --input.
    if "--print-defaults" in argv:
        import json

        d_engine, d_batch = get_default_params()
        payload = {
            "EngineParams": asdict(d_engine),
            "BatchParams": asdict(d_batch),
        }
        print(json.dumps(payload, indent=2))
        return

    parser = _build_cli_parser()
    args = parser.parse_args(argv)
    # Enable debug mode via --debug flag or environment variable STORE_FORECAST_DEBUG=1
    debug_mode = bool(
        getattr(args, "debug", False) or os.getenv("STORE_FORECAST_DEBUG", "") == "1"
    )
    if debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        engine, batch = _args_to_params(args)
        _orchestrate(Path(args.input_path).resolve(), engine, batch)
    except (FileNotFoundError, ValueError, TypeError) as e:
        # Concise, user-facing errors for common/user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set STORE_FORECAST_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
