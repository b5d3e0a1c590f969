# =============================================================================
# portfolio_core/config.py
# Settings for the Resilience Layer (defaults -> secrets.toml -> environment)
# =============================================================================
"""
Settings loading.

Sources, lowest priority first:

1. Dataclass defaults below
2. A TOML secrets file (default ``.streamlit/secrets.toml`` or ``secrets.toml``)::

       [supabase]
       url = "https://your-project.supabase.co"
       key = "your-anon-key"

       [resilience]
       request_timeout = 10
       max_retries = 3

3. ``.env`` file and process environment (``SUPABASE_URL``, ``SUPABASE_KEY``,
   ``PORTFOLIO_<FIELD_NAME>`` for any field, e.g. ``PORTFOLIO_MAX_RETRIES=5``)
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import toml
from dotenv import find_dotenv, load_dotenv

from portfolio_core.errors import ConfigurationError
from portfolio_core.logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "PORTFOLIO_"

DEFAULT_SECRETS_PATHS = (
    Path(".streamlit") / "secrets.toml",
    Path("secrets.toml"),
)


@dataclass(frozen=True)
class Settings:
    """Tunables for every subsystem. Times are in seconds unless named *_ms."""

    # Remote service
    supabase_url: str = ""
    supabase_key: str = ""

    # Local persistence
    local_db_path: Path = field(default_factory=lambda: Path("local_data") / "portfolio.db")

    # TTL cache
    cache_default_ttl: float = 300.0
    cache_sweep_interval: float = 60.0

    # Request executor
    request_timeout: float = 10.0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 10.0

    # Connection monitor
    probe_interval: float = 30.0
    probe_timeout: float = 5.0
    latency_threshold_ms: float = 1000.0
    failure_threshold: int = 3
    reconnect_base: float = 2.0
    reconnect_max: float = 120.0

    # Fallback router
    freshness_window: float = 900.0
    max_replay_attempts: int = 5

    # Orchestrator
    health_check_interval: float = 30.0
    history_size: int = 100
    healthy_ratio: float = 0.7

    # Auth
    token_refresh_margin: float = 300.0

    # Logging
    log_level: str = "INFO"

    @property
    def remote_configured(self) -> bool:
        """True when both Supabase URL and key are present."""
        return bool(self.supabase_url and self.supabase_key)

    def validate(self) -> Settings:
        """Raise ConfigurationError on values no subsystem can work with."""
        positive = (
            "cache_default_ttl", "request_timeout", "backoff_base", "backoff_max",
            "probe_interval", "probe_timeout", "latency_threshold_ms",
            "reconnect_base", "reconnect_max", "freshness_window",
            "health_check_interval",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(
                    f"{name} must be greater than zero",
                    config_key=name,
                    expected_type="positive number",
                )

        for name in ("max_retries", "failure_threshold", "max_replay_attempts", "history_size"):
            if getattr(self, name) < 1:
                raise ConfigurationError(
                    f"{name} must be at least 1",
                    config_key=name,
                    expected_type="positive integer",
                )

        if not 0.0 < self.healthy_ratio <= 1.0:
            raise ConfigurationError(
                "healthy_ratio must be in (0, 1]",
                config_key="healthy_ratio",
                expected_type="float",
            )

        if self.supabase_url and not self.supabase_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                "supabase_url must be an http(s) URL",
                config_key="supabase_url",
                expected_type="url",
            )
        return self


def _coerce(name: str, raw: Any, template: Any) -> Any:
    """Convert a raw TOML/env value to the type of the field's default."""
    try:
        if isinstance(template, bool):
            if isinstance(raw, str):
                return raw.strip().lower() in ("1", "true", "yes", "on")
            return bool(raw)
        if isinstance(template, int):
            return int(raw)
        if isinstance(template, float):
            return float(raw)
        if isinstance(template, Path):
            return Path(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {name}: {raw!r}",
            config_key=name,
            expected_type=type(template).__name__,
        ) from e


def _read_secrets_file(path: Optional[Path]) -> Dict[str, Any]:
    """Flatten the [supabase] and [resilience] tables of a secrets file."""
    candidates = [path] if path else list(DEFAULT_SECRETS_PATHS)

    for candidate in candidates:
        if candidate is None or not candidate.exists():
            continue
        try:
            secrets = toml.load(candidate)
        except (toml.TomlDecodeError, OSError) as e:
            raise ConfigurationError(f"Cannot read secrets file {candidate}: {e}") from e

        values: Dict[str, Any] = {}
        supabase = secrets.get("supabase", {})
        if "url" in supabase:
            values["supabase_url"] = supabase["url"]
        if "key" in supabase:
            values["supabase_key"] = supabase["key"]
        values.update(secrets.get("resilience", {}))

        logger.debug(f"Loaded settings from {candidate}")
        return values

    if path is not None:
        raise ConfigurationError(f"Secrets file not found: {path}", config_key="config_file")
    return {}


def _read_environment() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if os.getenv("SUPABASE_URL"):
        values["supabase_url"] = os.environ["SUPABASE_URL"]
    if os.getenv("SUPABASE_KEY"):
        values["supabase_key"] = os.environ["SUPABASE_KEY"]

    for f in fields(Settings):
        env_name = f"{ENV_PREFIX}{f.name.upper()}"
        if env_name in os.environ:
            values[f.name] = os.environ[env_name]
    return values


def load_settings(
    config_file: Optional[Path] = None,
    env_file: Optional[Path] = None,
    **overrides: Any,
) -> Settings:
    """
    Build validated Settings from defaults, secrets file, environment and overrides.

    Args:
        config_file: Explicit TOML secrets file (must exist when given)
        env_file: Explicit .env file (default: search from the working directory)
        **overrides: Field values that win over every other source

    Returns:
        Validated Settings
    """
    load_dotenv(dotenv_path=env_file or find_dotenv(usecwd=True), override=False)

    merged: Dict[str, Any] = {}
    merged.update(_read_secrets_file(config_file))
    merged.update(_read_environment())
    merged.update(overrides)

    defaults = Settings()
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(merged) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown setting(s): {', '.join(unknown)}",
            details={"unknown": unknown},
        )

    typed = {name: _coerce(name, value, getattr(defaults, name)) for name, value in merged.items()}
    settings = replace(defaults, **typed).validate()

    if not settings.remote_configured:
        logger.info("Supabase credentials not configured; running in local-only mode")
    return settings
