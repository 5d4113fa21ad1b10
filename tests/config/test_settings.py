from __future__ import annotations

import pytest

from Memory_KG.config import get_settings, load_settings
from Memory_KG.resilience.errors import ConfigurationError, ErrorCategory


def test_defaults() -> None:
    settings = load_settings()
    pipeline = settings.pipeline

    assert pipeline.embedding_concurrency_limit == 5
    assert pipeline.embedding_batch_size == 16
    assert pipeline.embedding_inter_batch_delay_seconds == pytest.approx(0.1)
    assert pipeline.max_attempts == 3
    assert pipeline.partial_failure_threshold == pytest.approx(0.5)
    assert settings.metrics.enabled is False


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("MEMKG_PIPELINE__EMBEDDING_CONCURRENCY_LIMIT", "9")
    monkeypatch.setenv("MEMKG_LOGGING__LEVEL", "DEBUG")

    settings = load_settings()

    assert settings.pipeline.embedding_concurrency_limit == 9
    assert settings.logging.level == "DEBUG"


def test_yaml_file_overrides_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("MEMKG_PIPELINE__MAX_ATTEMPTS", "4")
    config = tmp_path / "memkg.yaml"
    config.write_text("pipeline:\n  max_attempts: 6\n  embedding_batch_size: 8\n")

    settings = load_settings(config, pipeline={"embedding_batch_size": 2})

    assert settings.pipeline.max_attempts == 6
    assert settings.pipeline.embedding_batch_size == 2
    assert settings.pipeline.embedding_concurrency_limit == 5


@pytest.mark.parametrize(
    "overrides",
    [
        {"pipeline": {"embedding_concurrency_limit": 0}},
        {"pipeline": {"partial_failure_threshold": 1.5}},
        {"metrics": {"port": 70000}},
    ],
)
def test_invalid_values_raise_configuration_error(overrides) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(**overrides)


def test_invalid_environment_raises_configuration_error(monkeypatch) -> None:
    monkeypatch.setenv("MEMKG_PIPELINE__MAX_ATTEMPTS", "0")
    with pytest.raises(ConfigurationError):
        load_settings()


def test_missing_or_malformed_file(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "absent.yaml")
    listing = tmp_path / "list.yaml"
    listing.write_text("- one\n- two\n")
    with pytest.raises(ConfigurationError):
        load_settings(listing)


def test_retry_policy_mapping() -> None:
    settings = load_settings(
        pipeline={"max_attempts": 5, "base_delay": 0.25, "retry_unknown_errors": False}
    )
    policy = settings.pipeline.retry_policy()

    assert policy.max_attempts == 5
    assert policy.delay(1) == pytest.approx(0.25)
    assert policy.unknown_category is ErrorCategory.FATAL
    assert not policy.is_retryable(KeyError("unknown"))


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
