"""Configuration for deecli.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./deecli.yaml``
  3. ``~/.config/deecli/config.yaml``
  4. Built-in defaults

``DEEPSEEK_API_KEY`` overrides the active profile's key.  ``DEECLI_DEBUG=1``
turns on diagnostic tracing; it never changes what goes over the wire.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)

API_KEY_ENV = "DEEPSEEK_API_KEY"
DEBUG_ENV = "DEECLI_DEBUG"


def debug_enabled() -> bool:
    """Whether diagnostic tracing of chunks and merge state is on."""
    return os.environ.get(DEBUG_ENV) == "1"


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProfileSpec:
    """A named API endpoint + model selection.

    Models listed in ``reasoning_models`` are extended-reasoning models:
    they get ``reasoning_timeout`` instead of ``request_timeout`` and are
    never sent a ``temperature``.
    """

    api_key: str = ""
    base_url: str = "https://api.deepseek.com"
    model: str = "deepseek-chat"
    temperature: float = 0.1
    max_tokens: int = 4096
    reasoning_models: list[str] = field(
        default_factory=lambda: ["deepseek-reasoner"]
    )
    request_timeout: float = 180
    reasoning_timeout: float = 300

    def is_reasoning_model(self, model: str | None = None) -> bool:
        name = (model or self.model).lower()
        return any(name == m.lower() for m in self.reasoning_models)

    def supports_temperature(self, model: str | None = None) -> bool:
        return not self.is_reasoning_model(model)

    def timeout_for(self, model: str | None = None) -> float:
        """Per-turn deadline in seconds for *model*."""
        if self.is_reasoning_model(model):
            return self.reasoning_timeout
        return self.request_timeout


@dataclass
class ClientConfig:
    """Top-level config for deecli."""

    # Active profile name
    profile: str = "default"

    # Named profiles
    profiles: dict[str, ProfileSpec] = field(
        default_factory=lambda: {"default": ProfileSpec()}
    )

    # Context window
    max_context_size: int = 100_000  # characters; 0 means default
    history_window: int = 30  # messages

    # Retry policy
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    # Connection lifecycle
    idle_check_interval: float = 30.0
    idle_threshold: float = 600.0

    stream: bool = True

    @property
    def active_profile(self) -> ProfileSpec:
        return self.profiles.get(self.profile, ProfileSpec())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./deecli.yaml"),
    Path.home() / ".config" / "deecli" / "config.yaml",
]

_DEFAULTS = ClientConfig()


def _parse_profile(raw: dict[str, Any]) -> ProfileSpec:
    base = ProfileSpec()
    return ProfileSpec(
        api_key=raw.get("api_key", base.api_key) or "",
        base_url=raw.get("base_url", base.base_url),
        model=raw.get("model", base.model),
        temperature=float(raw.get("temperature", base.temperature)),
        max_tokens=int(raw.get("max_tokens", base.max_tokens)),
        reasoning_models=raw.get("reasoning_models", base.reasoning_models),
        request_timeout=float(raw.get("request_timeout", base.request_timeout)),
        reasoning_timeout=float(
            raw.get("reasoning_timeout", base.reasoning_timeout)
        ),
    )


def _apply_env(config: ClientConfig) -> ClientConfig:
    env_key = os.environ.get(API_KEY_ENV)
    if env_key:
        for spec in config.profiles.values():
            spec.api_key = env_key
    return config


def load_config(path: str | Path | None = None) -> ClientConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ClientConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return _apply_env(ClientConfig())
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return _apply_env(ClientConfig())

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    profiles: dict[str, ProfileSpec] = {}
    for name, praw in (raw.get("profiles") or {}).items():
        profiles[name] = _parse_profile(praw or {})

    # Flat single-profile files: top-level api_key/model/... keys
    if not profiles:
        profiles["default"] = _parse_profile(raw)

    active = raw.get("profile") or raw.get("active_profile") or next(iter(profiles))
    if active not in profiles:
        _logger.warning("Unknown profile %r, using %r", active, next(iter(profiles)))
        active = next(iter(profiles))

    config = ClientConfig(
        profile=active,
        profiles=profiles,
        max_context_size=raw.get("max_context_size") or _DEFAULTS.max_context_size,
        history_window=raw.get("history_window", _DEFAULTS.history_window),
        max_retries=raw.get("max_retries", _DEFAULTS.max_retries),
        base_delay=raw.get("base_delay", _DEFAULTS.base_delay),
        max_delay=raw.get("max_delay", _DEFAULTS.max_delay),
        idle_check_interval=raw.get(
            "idle_check_interval", _DEFAULTS.idle_check_interval,
        ),
        idle_threshold=raw.get("idle_threshold", _DEFAULTS.idle_threshold),
        stream=raw.get("stream", _DEFAULTS.stream),
    )
    return _apply_env(config)
