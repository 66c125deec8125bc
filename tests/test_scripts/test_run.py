"""Tests for the keeper entrypoint's startup error handling."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml


class TestMain:
    def test_malformed_env_exits_with_code_1(self, monkeypatch, tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
        from scripts.run import main

        monkeypatch.setattr(sys, "argv", ["run.py", "--config", str(tmp_path / "none.yaml")])
        monkeypatch.setenv("CRANK_INTERVAL_MS", "abc")

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1
        assert "Configuration error: CRANK_INTERVAL_MS" in capsys.readouterr().err

    def test_invalid_yaml_value_exits_with_code_1(self, monkeypatch, tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
        from scripts.run import main

        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"health": {"port": "eighty"}}))
        monkeypatch.setattr(sys, "argv", ["run.py", "--config", str(config_file)])
        monkeypatch.delenv("CRANK_INTERVAL_MS", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1
        assert "health.port" in capsys.readouterr().err
