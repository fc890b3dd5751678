"""Settings for anonymization runs.

Values are resolved in this order, later ones winning:
    1. package defaults (DEFAULTS below, plus APP_ENV / DATABASE_URL)
    2. a YAML file, either flat or nested under a "database_anonymize" key
    3. explicit overrides, usually from command-line flags (None is ignored)

Example file:

    database_anonymize:
      locale: de_DE
      chunk_size: 500
      restricted_env: [production, staging]
      allowed_db_connections: [analytics_copy]
      priority_models: [app.models.User]
      model_packages: [app.models]
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

SECTION = "database_anonymize"


def _default_environment() -> str:
    return os.getenv("APP_ENV", "production")


def _default_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///database.db")


class AnonymizeSettings(BaseModel):
    """Effective configuration for one run."""
    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    # Fake value generator
    locale: str = "en_US"
    seed: Optional[int] = None

    # Paging
    chunk_size: int = Field(default=1000, gt=0)

    # Environment guard
    environment: str = Field(default_factory=_default_environment)
    restricted_env: List[str] = Field(default_factory=lambda: ["production", "staging"])
    connection: str = "default"
    allowed_db_connections: List[str] = Field(default_factory=list)
    use_allowed_db_connections: bool = True

    # Models
    model_packages: List[str] = Field(default_factory=lambda: ["models"])
    priority_models: List[str] = Field(default_factory=list)

    # Data store
    database_url: str = Field(default_factory=_default_database_url)
    echo_sql: bool = False

    @field_validator("restricted_env", "allowed_db_connections", "model_packages", "priority_models", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        # Accept a single string or a null where a list is expected
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


def read_settings_file(path: Path | str) -> Dict[str, Any]:
    """Read a YAML settings file into a plain dict."""
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Settings file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping at top level")
    if SECTION in data:
        data = data[SECTION] or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: '{SECTION}' must be a mapping")
    return data


def load_settings(path: Optional[Path | str] = None, **overrides: Any) -> AnonymizeSettings:
    """Build settings from defaults, an optional YAML file and overrides."""
    data: Dict[str, Any] = {}
    if path is not None:
        data.update(read_settings_file(path))
    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return AnonymizeSettings(**data)
    except ValidationError as e:
        source = f" from {path}" if path is not None else ""
        raise ConfigurationError(f"Invalid settings{source}:\n{e}")
