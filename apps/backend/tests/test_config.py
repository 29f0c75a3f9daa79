"""Tests for application settings and engine configuration."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from bankrec.config import BACKEND_ROOT, Settings, parse_comma_list
from bankrec.services.engine_config import DEFAULT_CONFIG, load_reconciliation_config


def test_parse_comma_list_defaults() -> None:
    assert parse_comma_list(None, ["a"]) == ["a"]


def test_parse_comma_list_accepts_list() -> None:
    assert parse_comma_list(["x", "y"], ["a"]) == ["x", "y"]


def test_parse_comma_list_splits_string() -> None:
    assert parse_comma_list("x, y, ,z", ["a"]) == ["x", "y", "z"]


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./bankrec.db")
    monkeypatch.setenv("PAYMENT_KEYWORDS", "VIR, PRLV")
    monkeypatch.setenv("AUTOSAVE_DELAY_SECONDS", "0.5")
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.setenv("ENV", "staging")

    settings = Settings(_env_file=None)

    assert settings.is_sqlite
    assert settings.payment_keywords == ["VIR", "PRLV"]
    assert settings.autosave_delay_seconds == 0.5
    assert settings.environment == "staging"


def test_settings_defaults_and_prefix_normalization(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("LINE_NUMBER_PREFIX", " rl ")
    monkeypatch.setenv("RECONCILIATION_CONFIG_PATH", str(tmp_path / "engine.yaml"))
    monkeypatch.delenv("PAYMENT_KEYWORDS", raising=False)

    settings = Settings(_env_file=None)

    assert settings.line_number_prefix == "RL"
    assert settings.batch_number_prefix == "RAP"
    assert settings.reconciliation_config_path == tmp_path / "engine.yaml"
    assert "VIREMENT" in settings.payment_keywords


def test_settings_reject_negative_autosave_delay(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTOSAVE_DELAY_SECONDS", "-1")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_default_engine_config_file_ships_with_backend() -> None:
    assert (BACKEND_ROOT / "config" / "reconciliation.yaml").exists()


def test_load_reconciliation_config_reads_yaml_and_env(monkeypatch: pytest.MonkeyPatch) -> None:
    config = load_reconciliation_config()
    assert config.matched_threshold == 70
    assert config.amount_tolerance == Decimal("0.01")
    assert config.date_band_scores[0] == (0, 30)

    monkeypatch.setenv("RECONCILIATION_MATCHED_THRESHOLD", "80")
    monkeypatch.setenv("RECONCILIATION_AMOUNT_TOLERANCE", "0.05")
    updated = load_reconciliation_config(force_reload=True)
    assert updated.matched_threshold == 80
    assert updated.amount_tolerance == Decimal("0.05")


def test_load_reconciliation_config_is_cached(tmp_path) -> None:
    first = load_reconciliation_config()
    path = tmp_path / "reconciliation.yaml"
    path.write_text("scoring:\n  matched_threshold: 99\n")
    assert load_reconciliation_config(config_path=path) is first
    assert load_reconciliation_config(force_reload=True, config_path=path).matched_threshold == 99


def test_partial_yaml_keeps_defaults(tmp_path) -> None:
    path = tmp_path / "reconciliation.yaml"
    path.write_text("combinations:\n  max_size: 2\n")
    config = load_reconciliation_config(force_reload=True, config_path=path)
    assert config.max_combination_size == 2
    assert config.matched_threshold == DEFAULT_CONFIG.matched_threshold
    assert config.recurring_amount_score == DEFAULT_CONFIG.recurring_amount_score


@pytest.mark.parametrize(
    "content",
    [
        "scoring: [unclosed",
        "scoring:\n  matched_threshold: high\n",
        "fallback:\n  date_bands:\n    - {days: 3}\n",
    ],
)
def test_malformed_yaml_falls_back_to_defaults(tmp_path, content) -> None:
    path = tmp_path / "reconciliation.yaml"
    path.write_text(content)
    assert load_reconciliation_config(force_reload=True, config_path=path) == DEFAULT_CONFIG


def test_missing_file_uses_defaults(tmp_path) -> None:
    config = load_reconciliation_config(force_reload=True, config_path=tmp_path / "absent.yaml")
    assert config == DEFAULT_CONFIG
