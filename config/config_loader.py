"""Load settings.yaml into typed dataclasses and validate consensus settings before a run."""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

# sdks that run on the local machine and need no API key
LOCAL_SDKS = frozenset({"ollama"})

# a timed-out provider call is retried once with this multiple of its timeout
TIMEOUT_RETRY_FACTOR = 1.5
# first attempt plus the timeout retry must fit in call_timeout_sec
CALL_BUDGET_FACTOR = 1 + TIMEOUT_RETRY_FACTOR


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class ModelReference:
    """One participant slot in a consensus run, pointing at a registry entry."""

    model_id: str
    weight: float = 1.0
    enabled: bool = True


@dataclass
class PrivacyPreferences:
    privacy_warning_acknowledged: bool = False
    local_only_mode: bool = False
    approved_providers: list[str] = field(default_factory=list)


@dataclass
class RetryPolicy:
    """Backoff for transient provider errors (network, rate limit, 5xx)."""

    max_retries: int = 2
    base_delay_sec: float = 1.0
    max_delay_sec: float = 10.0
    backoff_multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_delay_sec * self.backoff_multiplier ** attempt, self.max_delay_sec)


@dataclass
class RateLimitSettings:
    """Per-model request budget: a token bucket plus a cap on calls in flight."""

    max_requests: int = 60
    window_sec: float = 60.0
    max_concurrent: int = 4


@dataclass
class ConsensusSettings:
    enabled: bool = True
    models: list[ModelReference] = field(default_factory=list)
    min_models_required: int = 2
    consensus_threshold: float = 0.66
    max_iterations: int = 3
    enable_source_validation: bool = True
    require_source_validation: bool = False
    enable_caching: bool = True
    fallback_to_single_model: bool = True
    min_consensus_fraction: float = 1.0
    max_concurrent_units: int = 3
    # whole budget for one participant call, retries included
    call_timeout_sec: float = 600.0
    cache_ttl_sec: float = 7 * 24 * 60 * 60
    privacy: PrivacyPreferences = field(default_factory=PrivacyPreferences)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)


@dataclass
class PromptsConfig:
    generate: str
    re_evaluate: str
    extract_facts: str


@dataclass
class DefaultsConfig:
    output_dir: Path
    cache_file: Path = Path(".cache") / "consensus_cache.pkl"


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    consensus: ConsensusSettings
    prompts: PromptsConfig
    available_providers: set[str] = field(default_factory=set)


class ConfigErrorKind(str, Enum):
    CONSENSUS_DISABLED = "consensus_disabled"
    INVALID_MIN_MODELS = "invalid_min_models"
    INSUFFICIENT_MODELS = "insufficient_models"
    THRESHOLD_OUT_OF_RANGE = "threshold_out_of_range"
    THRESHOLD_UNACHIEVABLE = "threshold_unachievable"
    INVALID_MAX_ITERATIONS = "invalid_max_iterations"
    DUPLICATE_MODEL = "duplicate_model"
    NON_POSITIVE_WEIGHT = "non_positive_weight"
    UNKNOWN_MODEL = "unknown_model"
    PRIVACY_VIOLATION = "privacy_violation"
    INVALID_RATE_LIMIT = "invalid_rate_limit"
    CALL_TIMEOUT_TOO_SHORT = "call_timeout_too_short"


class ConsensusConfigError(ValueError):
    """Raised when consensus settings are rejected before a run starts."""

    def __init__(self, kind: ConfigErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def validate_consensus_settings(
    settings: ConsensusSettings,
    registry: dict[str, ModelConfig] | None = None,
) -> None:
    """Reject settings that cannot produce a meaningful consensus run.

    Args:
        settings: Consensus settings to check.
        registry: Optional model registry; when given, every model reference
            must resolve and privacy preferences are enforced against its sdk.

    Raises:
        ConsensusConfigError: On the first problem found, with a message the
            user can act on.
    """
    enabled_models = [m for m in settings.models if m.enabled]
    enabled_count = len(enabled_models)

    if settings.min_models_required < 1:
        raise ConsensusConfigError(
            ConfigErrorKind.INVALID_MIN_MODELS,
            f"Minimum models required must be at least 1. Current value: {settings.min_models_required}. "
            "Set consensus.min_models_required to the number of models that must answer.",
        )

    if settings.enabled and enabled_count < settings.min_models_required:
        missing = settings.min_models_required - enabled_count
        raise ConsensusConfigError(
            ConfigErrorKind.INSUFFICIENT_MODELS,
            f"Consensus mode requires at least {settings.min_models_required} enabled models, "
            f"but only {enabled_count} {_plural(enabled_count, 'is', 'are')} enabled. "
            f"Enable {missing} more {_plural(missing, 'model', 'models')} or add models under consensus.models.",
        )

    threshold = settings.consensus_threshold
    if threshold < 0 or threshold > 1:
        raise ConsensusConfigError(
            ConfigErrorKind.THRESHOLD_OUT_OF_RANGE,
            f"Consensus threshold ({threshold * 100:.0f}%) is out of range. "
            "Use a value between 0.0 and 1.0.",
        )

    if enabled_count > 0:
        min_possible = 1.0 / enabled_count
        if settings.enabled and 0 < threshold < min_possible:
            raise ConsensusConfigError(
                ConfigErrorKind.THRESHOLD_UNACHIEVABLE,
                f"Consensus threshold ({threshold * 100:.0f}%) is below the minimum achievable with "
                f"{enabled_count} models. With {enabled_count} models the minimum threshold is "
                f"{min_possible * 100:.1f}% (at least one model must agree). "
                "Increase the threshold or add more models.",
            )

    if settings.max_iterations < 1:
        raise ConsensusConfigError(
            ConfigErrorKind.INVALID_MAX_ITERATIONS,
            f"Maximum iterations must be at least 1. Current value: {settings.max_iterations}. "
            "This setting controls how many consensus rounds are attempted.",
        )

    seen: set[str] = set()
    for ref in settings.models:
        if ref.model_id in seen:
            raise ConsensusConfigError(
                ConfigErrorKind.DUPLICATE_MODEL,
                f'Duplicate model in consensus configuration: "{ref.model_id}". '
                "Each model can only be added once. Remove the duplicate entry.",
            )
        seen.add(ref.model_id)

    for ref in settings.models:
        if ref.weight <= 0:
            raise ConsensusConfigError(
                ConfigErrorKind.NON_POSITIVE_WEIGHT,
                f'Model "{ref.model_id}" has an invalid weight of {ref.weight}. '
                "Weight must be a positive number (e.g. 1.0); higher weights give more influence.",
            )

    limit = settings.rate_limit
    if limit.max_requests < 1 or limit.window_sec <= 0 or limit.max_concurrent < 1:
        raise ConsensusConfigError(
            ConfigErrorKind.INVALID_RATE_LIMIT,
            f"Rate limit must allow at least one request per window and one call in flight. "
            f"Current values: max_requests={limit.max_requests}, window_sec={limit.window_sec:g}, "
            f"max_concurrent={limit.max_concurrent}. Fix consensus.rate_limit.",
        )

    if registry is None:
        return

    missing_ids = [ref.model_id for ref in settings.models if ref.model_id not in registry]
    if missing_ids:
        listed = ", ".join(f'"{m}"' for m in missing_ids)
        plural = len(missing_ids) > 1
        raise ConsensusConfigError(
            ConfigErrorKind.UNKNOWN_MODEL,
            f"Consensus model{'s' if plural else ''} {listed} {'were' if plural else 'was'} not found "
            "in the model registry. Add the model under models: or remove the reference.",
        )

    privacy = settings.privacy
    for ref in enabled_models:
        sdk = registry[ref.model_id].sdk
        if privacy.local_only_mode and sdk not in LOCAL_SDKS:
            raise ConsensusConfigError(
                ConfigErrorKind.PRIVACY_VIOLATION,
                f'Model "{ref.model_id}" uses the remote provider "{sdk}" but local-only mode is on. '
                "Disable the model or turn off privacy.local_only_mode.",
            )
        if privacy.approved_providers and sdk not in privacy.approved_providers and sdk not in LOCAL_SDKS:
            raise ConsensusConfigError(
                ConfigErrorKind.PRIVACY_VIOLATION,
                f'Model "{ref.model_id}" sends content to "{sdk}", which is not in privacy.approved_providers. '
                "Approve the provider or disable the model.",
            )

    for ref in enabled_models:
        provider_timeout = registry[ref.model_id].timeout_sec
        needed = provider_timeout * CALL_BUDGET_FACTOR
        if settings.call_timeout_sec < needed:
            raise ConsensusConfigError(
                ConfigErrorKind.CALL_TIMEOUT_TOO_SHORT,
                f"Call timeout ({settings.call_timeout_sec:g}s) leaves no room for the timeout retry of "
                f'model "{ref.model_id}" ({provider_timeout}s, retried at {TIMEOUT_RETRY_FACTOR:g}x). '
                f"Set consensus.call_timeout_sec to at least {needed:g}s or lower the model's timeout_sec.",
            )


def _parse_consensus(raw: dict) -> ConsensusSettings:
    privacy_raw = raw.get("privacy") or {}
    privacy = PrivacyPreferences(
        privacy_warning_acknowledged=bool(privacy_raw.get("privacy_warning_acknowledged", False)),
        local_only_mode=bool(privacy_raw.get("local_only_mode", False)),
        approved_providers=[str(p) for p in privacy_raw.get("approved_providers", [])],
    )
    retry_raw = raw.get("retry") or {}
    retry_defaults = RetryPolicy()
    retry = RetryPolicy(
        max_retries=int(retry_raw.get("max_retries", retry_defaults.max_retries)),
        base_delay_sec=float(retry_raw.get("base_delay_sec", retry_defaults.base_delay_sec)),
        max_delay_sec=float(retry_raw.get("max_delay_sec", retry_defaults.max_delay_sec)),
        backoff_multiplier=float(retry_raw.get("backoff_multiplier", retry_defaults.backoff_multiplier)),
    )
    limit_raw = raw.get("rate_limit") or {}
    limit_defaults = RateLimitSettings()
    rate_limit = RateLimitSettings(
        max_requests=int(limit_raw.get("max_requests", limit_defaults.max_requests)),
        window_sec=float(limit_raw.get("window_sec", limit_defaults.window_sec)),
        max_concurrent=int(limit_raw.get("max_concurrent", limit_defaults.max_concurrent)),
    )
    models = [
        ModelReference(
            model_id=str(m["model_id"]),
            weight=float(m.get("weight", 1.0)),
            enabled=bool(m.get("enabled", True)),
        )
        for m in raw.get("models", [])
    ]
    defaults = ConsensusSettings()
    return ConsensusSettings(
        enabled=bool(raw.get("enabled", defaults.enabled)),
        models=models,
        min_models_required=int(raw.get("min_models_required", defaults.min_models_required)),
        consensus_threshold=float(raw.get("consensus_threshold", defaults.consensus_threshold)),
        max_iterations=int(raw.get("max_iterations", defaults.max_iterations)),
        enable_source_validation=bool(raw.get("enable_source_validation", defaults.enable_source_validation)),
        require_source_validation=bool(raw.get("require_source_validation", defaults.require_source_validation)),
        enable_caching=bool(raw.get("enable_caching", defaults.enable_caching)),
        fallback_to_single_model=bool(raw.get("fallback_to_single_model", defaults.fallback_to_single_model)),
        min_consensus_fraction=float(raw.get("min_consensus_fraction", defaults.min_consensus_fraction)),
        max_concurrent_units=int(raw.get("max_concurrent_units", defaults.max_concurrent_units)),
        call_timeout_sec=float(raw.get("call_timeout_sec", defaults.call_timeout_sec)),
        cache_ttl_sec=float(raw.get("cache_ttl_sec", defaults.cache_ttl_sec)),
        privacy=privacy,
        retry=retry,
        rate_limit=rate_limit,
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs missing API keys but does not raise — validation of the consensus
    section happens separately in validate_consensus_settings.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(output_dir=Path(defaults_raw["output_dir"]))
    if defaults_raw.get("cache_file"):
        defaults.cache_file = Path(defaults_raw["cache_file"])

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        generate=prompts_raw["generate"],
        re_evaluate=prompts_raw["re_evaluate"],
        extract_facts=prompts_raw["extract_facts"],
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for model_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=model_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw.get("api_key_env", ""),
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )
        models[model_name] = model_cfg

        if model_cfg.sdk in LOCAL_SDKS:
            available_providers.add(model_name)
            logger.info("Provider available (local): %s", model_name)
            continue

        api_key = os.environ.get(model_cfg.api_key_env, "").strip()
        if api_key:
            available_providers.add(model_name)
            logger.info("Provider available: %s", model_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s — set %s in .env",
                model_name,
                model_cfg.api_key_env,
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        consensus=_parse_consensus(raw.get("consensus") or {}),
        prompts=prompts,
        available_providers=available_providers,
    )
