import json
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from store_forecast.cli import _args_to_params, _build_cli_parser, _orchestrate, load_input_csv, main
from store_forecast.config import BatchParams, EngineParams


def make_temp_csv(tmp_path: Path) -> Path:
    rows = []
    months = pd.period_range("2021-01", periods=36, freq="M")
    for store, scale in (("s1", 1000.0), ("s2", 1500.0), ("s3", 800.0)):
        for i, p in enumerate(months):
            rows.append(
                {
                    "store": store,
                    "date": p.strftime("%Y-%m"),
                    "value": scale + 8.0 * i + 40.0 * np.sin(i / 2.0),
                    "region": "east" if store != "s3" else "west",
                }
            )
    for i, p in enumerate(pd.period_range("2023-07", periods=6, freq="M")):
        rows.append({"store": "new", "date": p.strftime("%Y/%m"), "value": 200.0 + 10 * i, "region": "west"})
    path = tmp_path / "sales.csv"
    pd.DataFrame(rows).to_csv(path, index=False)
    return path


def test_print_defaults_outputs_json(capsys):
    main(["--print-defaults"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["EngineParams"]["iqr_k"] == 1.5
    assert payload["EngineParams"]["active_days"] == 60
    assert payload["BatchParams"]["horizon"] == 12


def test_args_override_only_given_values():
    parser = _build_cli_parser()
    args = parser.parse_args(
        ["--input", "x.csv", "--horizon", "6", "--iqr-k", "2.0", "--event-month", "2021/01"]
    )
    engine, batch = _args_to_params(args)
    assert engine.iqr_k == 2.0
    assert engine.event_months == ("2021-01",)
    assert engine.shift_threshold == EngineParams().shift_threshold
    assert batch.horizon == 6
    assert batch.holdout == BatchParams().holdout


def test_invalid_horizon_rejected():
    parser = _build_cli_parser()
    args = parser.parse_args(["--input", "x.csv", "--horizon", "0"])
    with pytest.raises(ValueError):
        _args_to_params(args)


def test_orchestrate_writes_run_artifacts(tmp_path, capsys):
    csv_path = make_temp_csv(tmp_path)
    out_base = tmp_path / "output"
    run_dir = _orchestrate(
        csv_path, EngineParams(), BatchParams(horizon=3, holdout=6, output_dir=str(out_base))
    )
    assert run_dir.parent == out_base

    names = sorted(p.name for p in run_dir.iterdir())
    prefixes = sorted(n.split("-")[0] for n in names)
    assert prefixes == ["backtest", "forecast", "manifest", "models", "report"]

    manifest_path = next(run_dir.glob("manifest-*.json"))
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    assert manifest["entity_count"] == 4
    assert manifest["pass_two_count"] == 1
    assert manifest["canonical_hash"].startswith(manifest["canonical_hash_short"])
    assert manifest_path.name == f"manifest-{manifest['canonical_hash_short']}.json"

    forecast = pd.read_csv(next(run_dir.glob("forecast-*.csv")))
    assert set(forecast["name"]) == {"s1", "s2", "s3", "new"}
    assert len(forecast) == 4 * 3

    models = pd.read_csv(next(run_dir.glob("models-*.csv")))
    assert models.loc[models["name"] == "new", "mode"].iloc[0] == "startup"

    out = capsys.readouterr().out
    assert "Model Comparison" in out
    assert "Global summary" in out
    assert "Correlation of top" in out
    assert "fit_mape" in out


def test_missing_input_exits_with_user_error(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--input", str(tmp_path / "missing.csv"), "--output-dir", str(tmp_path)])
    assert exc.value.code == 2
    assert "Input file not found" in capsys.readouterr().err


def test_unexpected_error_exits_with_code_one(tmp_path, monkeypatch, capsys):
    csv_path = make_temp_csv(tmp_path)

    def boom(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr("store_forecast.cli.run_batch", boom)
    monkeypatch.delenv("STORE_FORECAST_DEBUG", raising=False)
    with pytest.raises(SystemExit) as exc:
        main(["--input", str(csv_path), "--output-dir", str(tmp_path / "out")])
    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "Unexpected error: kaboom" in err
    assert "STORE_FORECAST_DEBUG=1" in err


def test_load_input_csv_keeps_leading_zeros_with_capitalized_header(tmp_path):
    path = tmp_path / "sales.csv"
    path.write_text("Store,Date,Value\n001,2023-01,10\n001,2023-02,12\n020,2023-01,7\n", encoding="utf-8")
    df = load_input_csv(path)
    assert list(df.columns) == ["store", "date", "value"]
    assert set(df["store"]) == {"001", "020"}
    assert df["date"].iloc[0] == "2023-01"
