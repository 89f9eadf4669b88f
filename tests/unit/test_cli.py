"""Tests for the command-line entry point."""

from pathlib import Path
from unittest.mock import patch

import pytest

from commentslash.core.config import QUOTA_ENV_VARS
from main import main, parse_args


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in (*QUOTA_ENV_VARS, "QUOTA_ENFORCE_PER_MINUTE", "DATA_DIR", "DETAILED_LOGGING"):
        monkeypatch.delenv(var, raising=False)


def _write_config(tmp_path: Path) -> Path:
    config_file = tmp_path / "settings.yaml"
    config_file.write_text(
        f"quota:\n  daily_limit: 10000\nstorage:\n  data_dir: {tmp_path / 'data'}\n",
    )
    return config_file


class TestParseArgs:
    def test_defaults_to_serve(self) -> None:
        args = parse_args([])
        assert args.command == "serve"
        assert args.config == "config/settings.yaml"

    def test_serve_overrides(self) -> None:
        args = parse_args(["serve", "--host", "127.0.0.1", "--port", "8080", "-v"])
        assert args.host == "127.0.0.1"
        assert args.port == 8080
        assert args.verbose is True

    def test_estimate(self) -> None:
        args = parse_args(["estimate", "delete", "20"])
        assert args.command == "estimate"
        assert args.operation == "delete"
        assert args.count == 20

    def test_estimate_rejects_unknown_operation(self) -> None:
        with pytest.raises(SystemExit):
            parse_args(["estimate", "upload", "1"])


class TestMain:
    def test_estimate_output(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        config_file = _write_config(tmp_path)
        main(["estimate", "delete", "20", "--config", str(config_file)])
        out = capsys.readouterr().out
        assert "delete x 20: 1000 units (10.0% of the daily limit)" in out

    def test_estimate_negative_count_exits(self, tmp_path: Path) -> None:
        config_file = _write_config(tmp_path)
        with pytest.raises(SystemExit) as exc_info:
            main(["estimate", "delete", "-5", "--config", str(config_file)])
        assert exc_info.value.code == 1

    def test_status_on_empty_ledger(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        config_file = _write_config(tmp_path)
        main(["status", "--config", str(config_file)])
        out = capsys.readouterr().out
        assert "Used: 0/10000" in out
        assert "Remaining: 10000" in out
        assert "Resets in:" in out

    def test_missing_config_exits(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["status", "--config", str(tmp_path / "nope.yaml")])
        assert exc_info.value.code == 1
        assert "Error loading config" in capsys.readouterr().err

    def test_unknown_timezone_exits(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(
            f"quota:\n  provider_timezone: Mars/Olympus\nstorage:\n  data_dir: {tmp_path / 'data'}\n",
        )
        with pytest.raises(SystemExit) as exc_info:
            main(["status", "--config", str(config_file)])
        assert exc_info.value.code == 1
        assert "Error loading config" in capsys.readouterr().err

    def test_serve_wires_app(self, tmp_path: Path) -> None:
        config_file = _write_config(tmp_path)
        with patch("uvicorn.run") as mock_run:
            main(["serve", "--config", str(config_file), "--port", "8123"])
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["port"] == 8123
