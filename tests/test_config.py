"""Tests for config/config_loader.py."""

from dataclasses import replace
from pathlib import Path

import pytest
import yaml

from config.config_loader import (
    AppConfig,
    ConfigErrorKind,
    ConsensusConfigError,
    ConsensusSettings,
    ModelConfig,
    ModelReference,
    PrivacyPreferences,
    PromptsConfig,
    RateLimitSettings,
    load_config,
    validate_consensus_settings,
)


@pytest.fixture
def minimal_settings(tmp_path: Path) -> Path:
    """Write a minimal valid settings.yaml to a temp path."""
    settings = {
        "defaults": {"output_dir": "./output"},
        "models": {
            "claude": {
                "sdk": "anthropic",
                "model": "claude-sonnet-4-5",
                "api_key_env": "TEST_CLAUDE_KEY",
                "timeout_sec": 120,
                "max_tokens": 4096,
            },
            "llama": {
                "sdk": "ollama",
                "model": "llama3.1",
                "timeout_sec": 300,
                "max_tokens": 2048,
                "base_url": "http://localhost:11434/v1",
            },
        },
        "consensus": {
            "consensus_threshold": 0.75,
            "max_iterations": 4,
            "models": [
                {"model_id": "claude", "weight": 2},
                {"model_id": "llama", "enabled": False},
            ],
            "privacy": {"approved_providers": ["anthropic"]},
        },
        "prompts": {
            "generate": "Q: {question}",
            "re_evaluate": "Round {round}. Q: {question}\n{alternatives}",
            "extract_facts": "Facts: {source}",
        },
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump(settings), encoding="utf-8")
    return path


def _registry() -> dict[str, ModelConfig]:
    def model(name: str, sdk: str) -> ModelConfig:
        return ModelConfig(name=name, sdk=sdk, model=f"{name}-1", api_key_env="", timeout_sec=60, max_tokens=1024)

    return {
        "claude": model("claude", "anthropic"),
        "openai": model("openai", "openai"),
        "llama": model("llama", "ollama"),
    }


def _settings(*model_ids: str, **overrides) -> ConsensusSettings:
    return replace(ConsensusSettings(models=[ModelReference(m) for m in model_ids]), **overrides)


def _kind(settings: ConsensusSettings, registry=None) -> ConfigErrorKind:
    with pytest.raises(ConsensusConfigError) as exc_info:
        validate_consensus_settings(settings, registry)
    return exc_info.value.kind


# --- load_config ---


def test_load_config_returns_app_config(minimal_settings):
    config = load_config(minimal_settings)
    assert isinstance(config, AppConfig)
    assert isinstance(config.defaults.output_dir, Path)


def test_load_config_models(minimal_settings):
    config = load_config(minimal_settings)
    assert isinstance(config.models["claude"], ModelConfig)
    assert config.models["claude"].model == "claude-sonnet-4-5"
    assert config.models["claude"].base_url is None
    assert config.models["llama"].base_url == "http://localhost:11434/v1"
    assert config.models["llama"].api_key_env == ""


def test_load_config_prompts(minimal_settings):
    config = load_config(minimal_settings)
    assert isinstance(config.prompts, PromptsConfig)
    assert "{alternatives}" in config.prompts.re_evaluate


def test_load_config_consensus_section(minimal_settings):
    consensus = load_config(minimal_settings).consensus
    assert consensus.consensus_threshold == 0.75
    assert consensus.max_iterations == 4
    assert consensus.models == [
        ModelReference("claude", weight=2.0),
        ModelReference("llama", weight=1.0, enabled=False),
    ]
    assert consensus.privacy.approved_providers == ["anthropic"]
    # unspecified keys keep their defaults
    assert consensus.min_models_required == 2
    assert consensus.fallback_to_single_model


def test_load_config_consensus_defaults_when_missing(minimal_settings):
    raw = yaml.safe_load(minimal_settings.read_text(encoding="utf-8"))
    del raw["consensus"]
    minimal_settings.write_text(yaml.dump(raw), encoding="utf-8")

    consensus = load_config(minimal_settings).consensus
    assert consensus == ConsensusSettings()


def test_load_config_available_providers_with_key(minimal_settings, monkeypatch):
    monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-test-key")
    config = load_config(minimal_settings)
    assert config.available_providers == {"claude", "llama"}


def test_load_config_local_provider_needs_no_key(minimal_settings, monkeypatch):
    monkeypatch.delenv("TEST_CLAUDE_KEY", raising=False)
    config = load_config(minimal_settings)
    assert config.available_providers == {"llama"}


def test_load_config_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config(Path("/nonexistent/settings.yaml"))


def test_shipped_settings_load():
    config = load_config()
    assert {"claude", "openai", "gemini"} <= set(config.models)
    validate_consensus_settings(config.consensus, config.models)


# --- validate_consensus_settings ---


def test_valid_settings_pass():
    validate_consensus_settings(_settings("claude", "openai"), _registry())


def test_too_few_enabled_models():
    settings = _settings("claude", "openai")
    settings.models[1].enabled = False
    assert _kind(settings) is ConfigErrorKind.INSUFFICIENT_MODELS


def test_insufficient_models_message_is_actionable():
    with pytest.raises(ConsensusConfigError, match="requires at least 2 enabled models, but only 1 is enabled"):
        validate_consensus_settings(_settings("claude"))


@pytest.mark.parametrize("threshold", [-0.1, 1.5])
def test_threshold_out_of_range(threshold):
    assert _kind(_settings("claude", "openai", consensus_threshold=threshold)) is ConfigErrorKind.THRESHOLD_OUT_OF_RANGE


def test_threshold_below_one_model_share_is_unachievable():
    settings = _settings("claude", "openai", "llama", consensus_threshold=0.2)
    assert _kind(settings) is ConfigErrorKind.THRESHOLD_UNACHIEVABLE


@pytest.mark.parametrize("threshold", [0.0, 1 / 3, 1.0])
def test_boundary_thresholds_are_accepted(threshold):
    validate_consensus_settings(_settings("claude", "openai", "llama", consensus_threshold=threshold))


def test_max_iterations_must_be_positive():
    assert _kind(_settings("claude", "openai", max_iterations=0)) is ConfigErrorKind.INVALID_MAX_ITERATIONS


def test_duplicate_models_rejected():
    assert _kind(_settings("claude", "openai", "claude")) is ConfigErrorKind.DUPLICATE_MODEL


@pytest.mark.parametrize("weight", [0.0, -1.0])
def test_non_positive_weight_rejected(weight):
    settings = _settings("claude", "openai")
    settings.models[0].weight = weight
    assert _kind(settings) is ConfigErrorKind.NON_POSITIVE_WEIGHT


def test_first_problem_wins():
    settings = _settings("claude", consensus_threshold=2.0, max_iterations=0)
    assert _kind(settings) is ConfigErrorKind.INSUFFICIENT_MODELS


def test_unknown_model_only_checked_with_registry():
    settings = _settings("claude", "mistral")
    validate_consensus_settings(settings)
    assert _kind(settings, _registry()) is ConfigErrorKind.UNKNOWN_MODEL


def test_local_only_mode_rejects_remote_models():
    settings = _settings("claude", "llama", privacy=PrivacyPreferences(local_only_mode=True))
    assert _kind(settings, _registry()) is ConfigErrorKind.PRIVACY_VIOLATION


def test_local_only_mode_ignores_disabled_models():
    settings = _settings("llama", "claude", "openai", privacy=PrivacyPreferences(local_only_mode=True),
                         min_models_required=1, consensus_threshold=1.0)
    settings.models[1].enabled = False
    settings.models[2].enabled = False
    validate_consensus_settings(settings, _registry())


def test_approved_providers_allow_list():
    settings = _settings("claude", "openai", privacy=PrivacyPreferences(approved_providers=["anthropic"]))
    assert _kind(settings, _registry()) is ConfigErrorKind.PRIVACY_VIOLATION

    settings = _settings("claude", "llama", privacy=PrivacyPreferences(approved_providers=["anthropic"]))
    validate_consensus_settings(settings, _registry())


def test_disabled_consensus_skips_model_count():
    validate_consensus_settings(_settings("claude", enabled=False))


@pytest.mark.parametrize("min_models", [0, -1])
def test_min_models_required_must_be_positive(min_models):
    settings = _settings("claude", "openai", min_models_required=min_models)
    assert _kind(settings) is ConfigErrorKind.INVALID_MIN_MODELS


def test_call_timeout_must_cover_timeout_retry():
    # registry timeouts are 60s; the first attempt plus its 1.5x retry need 150s
    settings = _settings("claude", "openai", call_timeout_sec=149.0)
    assert _kind(settings, _registry()) is ConfigErrorKind.CALL_TIMEOUT_TOO_SHORT
    with pytest.raises(ConsensusConfigError, match="at least 150s"):
        validate_consensus_settings(settings, _registry())

    validate_consensus_settings(_settings("claude", "openai", call_timeout_sec=150.0), _registry())


def test_call_timeout_ignores_disabled_models():
    registry = _registry()
    registry["llama"].timeout_sec = 300
    settings = _settings("claude", "openai", "llama", call_timeout_sec=150.0, consensus_threshold=0.5)
    settings.models[2].enabled = False
    validate_consensus_settings(settings, registry)


@pytest.mark.parametrize("limit", [
    RateLimitSettings(max_requests=0),
    RateLimitSettings(window_sec=0),
    RateLimitSettings(max_concurrent=0),
])
def test_rate_limit_must_admit_requests(limit):
    assert _kind(_settings("claude", "openai", rate_limit=limit)) is ConfigErrorKind.INVALID_RATE_LIMIT


def test_load_config_parses_retry_and_rate_limit(minimal_settings):
    raw = yaml.safe_load(minimal_settings.read_text(encoding="utf-8"))
    raw.setdefault("consensus", {})
    raw["consensus"]["retry"] = {"max_retries": 4, "base_delay_sec": 0.5}
    raw["consensus"]["rate_limit"] = {"max_requests": 10, "max_concurrent": 2}
    raw["defaults"]["cache_file"] = "state/cache.pkl"
    minimal_settings.write_text(yaml.safe_dump(raw), encoding="utf-8")

    config = load_config(minimal_settings)

    assert config.consensus.retry.max_retries == 4
    assert config.consensus.retry.base_delay_sec == 0.5
    assert config.consensus.retry.max_delay_sec == 10.0
    assert config.consensus.rate_limit.max_requests == 10
    assert config.consensus.rate_limit.window_sec == 60.0
    assert config.consensus.rate_limit.max_concurrent == 2
    assert config.defaults.cache_file == Path("state/cache.pkl")
