"""
Recall - Extraction Settings
Typed view over the MEMORY_LLM_* environment.

config.py holds the defaults; load_settings() re-reads the environment so
per-provider keys (MEMORY_LLM_API_KEY_<NAME> etc.) can be discovered by name.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Mapping

import config
from concurrency.rate_limiter import RateLimiterConfig

PROVIDER_ALIASES = {
    "claude": "anthropic",
    "gpt": "openai",
    "koboldcpp": "kobold",
}
KEYLESS_PROVIDERS = ("kobold",)


class LLMConfigError(Exception):
    """Raised when the extraction settings are unusable."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass(frozen=True)
class ProviderSettings:
    """Connection settings for one provider."""
    name: str
    api_key: str = ""
    model: str = ""
    base_url: str = ""

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key) or self.name in KEYLESS_PROVIDERS


@dataclass(frozen=True)
class ExtractionSettings:
    """Everything the extraction service needs to build its components."""
    primary: str
    fallback: Optional[str] = None
    daily_budget_usd: float = 0.0
    max_retries: int = 3
    circuit_threshold: float = 0.5
    circuit_cooldown: float = 30.0
    circuit_min_calls: int = 10
    call_timeout: float = 60.0
    streaming: bool = True
    fallback_on_invalid_request: bool = False
    rate_limits: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    providers: Dict[str, ProviderSettings] = field(default_factory=dict)

    def provider(self, name: str) -> Optional[ProviderSettings]:
        return self.providers.get(normalize_provider_name(name))


def normalize_provider_name(name: Optional[str]) -> str:
    """Lower-case, trim and resolve aliases ('claude' -> 'anthropic')."""
    cleaned = (name or "").strip().lower()
    return PROVIDER_ALIASES.get(cleaned, cleaned)


def normalize_fallback(value: Optional[str]) -> Optional[str]:
    """Fallback name, or None when unset or 'none'."""
    cleaned = normalize_provider_name(value)
    if not cleaned or cleaned == "none":
        return None
    return cleaned


def _parse_float(value: Optional[str], default: float) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _lookup(env: Mapping[str, str], prefix: str, name: str) -> str:
    """Read PREFIX_<NAME>, also trying every alias of the provider."""
    names = [name] + [alias for alias, target in PROVIDER_ALIASES.items() if target == name]
    for candidate in names:
        value = env.get(f"{prefix}_{candidate.upper()}")
        if value:
            return value.strip()
    return ""


def load_provider_settings(name: str, env: Optional[Mapping[str, str]] = None) -> ProviderSettings:
    """Settings for one provider from the environment."""
    env = os.environ if env is None else env
    name = normalize_provider_name(name)

    api_key = _lookup(env, "MEMORY_LLM_API_KEY", name)
    if not api_key and name in config.LEGACY_API_KEY_VARS:
        api_key = (env.get(config.LEGACY_API_KEY_VARS[name]) or "").strip()

    return ProviderSettings(
        name=name,
        api_key=api_key,
        model=_lookup(env, "MEMORY_LLM_MODEL", name) or config.DEFAULT_MODELS.get(name, ""),
        base_url=_lookup(env, "MEMORY_LLM_BASE_URL", name) or config.DEFAULT_BASE_URLS.get(name, ""),
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> ExtractionSettings:
    """
    Build ExtractionSettings from the environment.

    Args:
        env: Mapping to read instead of os.environ (tests)

    Returns:
        ExtractionSettings; call validate_settings() before use
    """
    env = os.environ if env is None else env

    primary = normalize_provider_name(env.get("MEMORY_LLM_PRIMARY", config.MEMORY_LLM_PRIMARY))
    fallback = normalize_fallback(env.get("MEMORY_LLM_FALLBACK", config.MEMORY_LLM_FALLBACK))

    providers = {}
    for name in (primary, fallback):
        if name and name not in providers:
            providers[name] = load_provider_settings(name, env)

    rate_limits = RateLimiterConfig(
        burst_capacity=_parse_int(env.get("MEMORY_LLM_RATE_BURST"), config.MEMORY_LLM_RATE_BURST),
        sustained_rate=_parse_float(env.get("MEMORY_LLM_RATE_SUSTAINED"), config.MEMORY_LLM_RATE_SUSTAINED),
        window_seconds=_parse_float(
            env.get("MEMORY_LLM_RATE_WINDOW_SECONDS"), config.MEMORY_LLM_RATE_WINDOW_SECONDS
        ),
        max_per_window=_parse_int(env.get("MEMORY_LLM_RATE_WINDOW_MAX"), config.MEMORY_LLM_RATE_WINDOW_MAX),
    )

    return ExtractionSettings(
        primary=primary,
        fallback=fallback,
        daily_budget_usd=_parse_float(env.get("MEMORY_LLM_DAILY_BUDGET_USD"), config.MEMORY_LLM_DAILY_BUDGET_USD),
        max_retries=_parse_int(env.get("MEMORY_LLM_MAX_RETRIES"), config.MEMORY_LLM_MAX_RETRIES),
        circuit_threshold=_parse_float(
            env.get("MEMORY_LLM_CIRCUIT_THRESHOLD"), config.MEMORY_LLM_CIRCUIT_THRESHOLD
        ),
        circuit_cooldown=_parse_float(env.get("MEMORY_LLM_CIRCUIT_COOLDOWN"), config.MEMORY_LLM_CIRCUIT_COOLDOWN),
        circuit_min_calls=_parse_int(env.get("MEMORY_LLM_CIRCUIT_MIN_CALLS"), config.MEMORY_LLM_CIRCUIT_MIN_CALLS),
        call_timeout=_parse_float(env.get("MEMORY_LLM_CALL_TIMEOUT"), config.MEMORY_LLM_CALL_TIMEOUT),
        streaming=_parse_bool(env.get("MEMORY_LLM_STREAMING"), config.MEMORY_LLM_STREAMING),
        fallback_on_invalid_request=_parse_bool(
            env.get("MEMORY_LLM_FALLBACK_ON_INVALID_REQUEST"), config.FALLBACK_ON_INVALID_REQUEST
        ),
        rate_limits=rate_limits,
        providers=providers,
    )


def validate_settings(settings: ExtractionSettings) -> List[str]:
    """
    Collect every problem with a settings object.

    Returns:
        List of human-readable errors (empty when valid)
    """
    errors = []
    checked = set()

    if not settings.primary:
        errors.append("Primary provider is required")
    else:
        primary = settings.providers.get(settings.primary)
        if primary is None:
            errors.append(f'Primary provider "{settings.primary}" is not configured')
        elif not primary.has_credentials:
            errors.append(f'Provider "{settings.primary}" is missing API key')
            checked.add(settings.primary)

    if settings.fallback:
        fallback = settings.providers.get(settings.fallback)
        if fallback is None:
            errors.append(f'Fallback provider "{settings.fallback}" is not configured')
        elif not fallback.has_credentials and settings.fallback not in checked:
            errors.append(f'Provider "{settings.fallback}" is missing API key')
            checked.add(settings.fallback)
        if settings.fallback == settings.primary:
            errors.append("Fallback provider must differ from the primary provider")

    if settings.daily_budget_usd < 0:
        errors.append("Daily budget must be non-negative")
    if settings.max_retries < 1:
        errors.append("Max retries must be at least 1")
    if not 0 <= settings.circuit_threshold <= 1:
        errors.append("Circuit breaker threshold must be between 0 and 1")
    if settings.circuit_cooldown < 0:
        errors.append("Circuit breaker cooldown must be non-negative")
    if settings.circuit_min_calls < 1:
        errors.append("Circuit breaker minimum calls must be at least 1")
    if settings.call_timeout <= 0:
        errors.append("Call timeout must be positive")
    if settings.rate_limits.burst_capacity < 1 or settings.rate_limits.max_per_window < 1:
        errors.append("Rate limits must admit at least one call")

    return errors


def require_valid_settings(settings: ExtractionSettings) -> ExtractionSettings:
    """Return settings unchanged or raise LLMConfigError listing every problem."""
    errors = validate_settings(settings)
    if errors:
        raise LLMConfigError(errors)
    return settings
