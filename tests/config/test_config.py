from __future__ import annotations

import pytest

from entigraph.config import (
    ConfigurationError,
    MissingConfigurationError,
    get_pipeline_settings,
    optional_env_int,
    require_env_vars,
)


def test_require_env_vars_returns_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXAMPLE_VAR", "value")

    result = require_env_vars(["EXAMPLE_VAR"])

    assert result["EXAMPLE_VAR"] == "value"


def test_require_env_vars_reports_every_missing_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MISSING_B", raising=False)
    monkeypatch.setenv("MISSING_A", "   ")

    with pytest.raises(MissingConfigurationError) as exc:
        require_env_vars(["MISSING_B", "MISSING_A"])

    assert "MISSING_A, MISSING_B" in str(exc.value)


def test_optional_env_int_falls_back_when_unset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EXAMPLE_INT", raising=False)

    assert optional_env_int("EXAMPLE_INT", 7) == 7


@pytest.mark.parametrize("raw", ["abc", "0", "-3"])
def test_optional_env_int_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch, raw: str
) -> None:
    monkeypatch.setenv("EXAMPLE_INT", raw)

    with pytest.raises(ConfigurationError):
        optional_env_int("EXAMPLE_INT", 7)


def test_pipeline_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENTIGRAPH_SITE_URL", "https://news.example/")
    monkeypatch.setenv("ENTIGRAPH_BATCH_SIZE", "10")
    monkeypatch.setenv("ENTIGRAPH_PROPAGATION_BATCH_SIZE", "25")

    settings = get_pipeline_settings()

    assert settings.site_url == "https://news.example"
    assert settings.batch_size == 10
    assert settings.propagation_batch_size == 25


def test_pipeline_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("ENTIGRAPH_SITE_URL", "ENTIGRAPH_BATCH_SIZE", "ENTIGRAPH_PROPAGATION_BATCH_SIZE"):
        monkeypatch.delenv(name, raising=False)

    settings = get_pipeline_settings()

    assert settings.site_url == "https://example.org"
    assert settings.batch_size == 5
    assert settings.batch_policy.clamp(200) == 50
    assert settings.retry.delay_for(1) == 5.0
    assert settings.retry.delay_for(2) == 10.0
