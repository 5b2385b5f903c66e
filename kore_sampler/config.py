"""
Pipeline configuration.

A KoreConfig value is built once (by the CLI or a routing layer) and passed
explicitly to every component. Precedence, lowest to highest:

    hardcoded defaults < YAML file < KORE_* environment variables < keyword overrides

The YAML file follows the bot config layout:

    kore:
      name: Member Services Bot
      bot_id: st-...
      client_id: cs-...
      client_secret: ...
      base_url: https://bots.kore.ai/api/public
    sampling:
      min_messages_per_session: 2
    fetch:
      batch_concurrency: 10
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://bots.kore.ai/api/public"
DEFAULT_AUDIENCE = "https://bots.kore.ai"

# Resolves to {project_root}/config/bot.yaml
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "bot.yaml"

# Environment variable -> config field
ENV_OVERRIDES = {
    "KORE_BOT_ID": "bot_id",
    "KORE_CLIENT_ID": "client_id",
    "KORE_CLIENT_SECRET": "client_secret",
    "KORE_BASE_URL": "base_url",
    "KORE_BOT_NAME": "name",
    "KORE_SESSION_SOURCE": "source",
    "KORE_RATE_LIMIT_PER_MINUTE": "rate_limit_per_minute",
    "KORE_REQUEST_TIMEOUT": "request_timeout_seconds",
    "KORE_BATCH_CONCURRENCY": "batch_concurrency",
}


class KoreConfig(BaseModel):
    """Credentials and tunables for one bot."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    bot_id: str = ""
    client_id: str = ""
    client_secret: str = Field(default="", repr=False)
    base_url: str = DEFAULT_BASE_URL
    audience: str = DEFAULT_AUDIENCE
    name: str = "kore-bot"

    # Which SessionSource variant to build
    source: Literal["remote", "synthetic"] = "remote"
    synthetic_seed: int = 42

    # Rate limiting (vendor quota is 60/min, 1800/hour)
    rate_limit_per_minute: int = Field(default=59, ge=1, le=60)
    hourly_limit: int = Field(default=1800, ge=1)
    rate_limit_cooldown_seconds: float = Field(default=60.0, ge=0)
    rate_limit_retries: int = Field(default=1, ge=0, le=5)

    # Fetching
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=20, ge=1, le=20)
    batch_concurrency: int = Field(default=10, ge=1, le=50)
    metadata_page_limit: int = Field(default=10000, ge=1)
    message_page_limit: int = Field(default=10000, ge=1)

    # Sampling
    min_messages_per_session: int = Field(default=2, ge=0)
    min_session_count: int = Field(default=10, ge=1)

    def require_credentials(self) -> None:
        """Raise ConfigurationError unless bot_id, client_id and client_secret are set."""
        missing = [
            name for name in ("bot_id", "client_id", "client_secret")
            if not getattr(self, name).strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required Kore.ai credentials: {', '.join(missing)}"
            )


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Flatten the kore/sampling/fetch sections of a YAML file into field values."""
    with open(path) as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed configuration file {path}: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigurationError(
            f"Configuration file {path} must contain a mapping, got {type(loaded).__name__}"
        )

    values: Dict[str, Any] = {}
    for section in ("kore", "sampling", "fetch"):
        section_values = loaded.get(section)
        if section_values is None:
            continue
        if not isinstance(section_values, dict):
            logger.warning(
                f"Config key '{section}' should be a dict, got {type(section_values).__name__}"
            )
            continue
        values.update(section_values)
    return values


def _read_env() -> Dict[str, Any]:
    values = {}
    for env_name, field in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            values[field] = value
    return values


def load_config(
    path: Optional[Path] = None,
    require_credentials: Optional[bool] = None,
    **overrides: Any,
) -> KoreConfig:
    """
    Build a KoreConfig from defaults, a YAML file, the environment and overrides.

    Args:
        path: YAML file. An explicit path must exist; the default path is optional.
        require_credentials: Validate credentials. Defaults to True for the
            remote source and False for the synthetic one.
        **overrides: Field values that win over every other layer.

    Raises:
        ConfigurationError: On a missing explicit file, malformed YAML,
            invalid field values, or missing remote credentials.
    """
    load_dotenv()

    values: Dict[str, Any] = {}
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        values.update(_read_yaml(config_path))
        logger.debug(f"Loaded configuration from {config_path}")
    elif path:
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    values.update(_read_env())
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        config = KoreConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if require_credentials is None:
        require_credentials = config.source == "remote"
    if require_credentials:
        config.require_credentials()

    logger.info(f"Loaded configuration for: {config.name} (source={config.source})")
    return config
