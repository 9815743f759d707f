import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from psycopg.conninfo import make_conninfo
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_ENV_LOADED = False

SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")
LOG_LEVELS = ("debug", "info", "warn", "warning", "error")


def _load_env_file(path: str, allow_override: bool = False) -> None:
    """
    Minimal .env loader: loads KEY=VALUE pairs into os.environ.
    - Ignores empty lines and lines starting with '#'
    - Supports values wrapped in single or double quotes
    - By default, does not override existing environment variables
    """
    try:
        if not path or not os.path.exists(path):
            return
        with open(path, "r", encoding="utf-8") as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export "):].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()
                if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]
                if allow_override or key not in os.environ:
                    os.environ[key] = value
    except FileNotFoundError:
        pass
    except PermissionError as e:
        print(f"FATAL: Permission denied reading environment file {path}: {e}", file=sys.stderr)
        raise


def load_env_if_present(force_reload: bool = False) -> None:
    """
    Load environment variables from .env files in order of precedence:
    1. PGUPSERT_ENV_FILE when set (only that file)
    2. .env.local
    3. .env
    """
    global _ENV_LOADED
    if _ENV_LOADED and not force_reload:
        return

    custom = os.environ.get("PGUPSERT_ENV_FILE")
    if custom:
        _load_env_file(custom, allow_override=False)
    else:
        for env_file in ('.env.local', '.env'):
            _load_env_file(env_file, allow_override=False)

    _ENV_LOADED = True


class DatabaseConfig(BaseModel):
    """
    Connection and pool settings.

    Field aliases match the YAML keys of the database config file
    (``dbname``, ``sslmode``, ``logLevel``); snake_case names are accepted too.
    """
    model_config = ConfigDict(populate_by_name=True, validate_assignment=True, extra="ignore")

    user: str = "postgres"
    password: str = Field(default="", repr=False)
    host: str = "localhost"
    port: int = 5432
    dbname: str = "postgres"
    sslmode: str = "prefer"
    log_level: str = Field(default="error", alias="logLevel")
    application_name: str = "pgupsert"

    # Pool sizing
    pool_min_size: int = Field(default=1, ge=0, le=100)
    pool_max_size: int = Field(default=10, ge=1, le=1000)
    pool_timeout: float = Field(default=30.0, gt=0, description="Seconds to wait for a free connection")
    pool_max_idle: float = Field(default=300.0, ge=0)
    pool_max_lifetime: float = Field(default=3600.0, ge=0)

    @field_validator('user', 'host', 'dbname', mode='before')
    @classmethod
    def validate_not_empty_str(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Value cannot be empty or whitespace only")
        return v.strip()

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if v < 1 or v > 65535:
            raise ValueError(f"Invalid port number: {v}")
        return v

    @field_validator('sslmode', mode='before')
    @classmethod
    def validate_sslmode(cls, v):
        val = str(v or "prefer").strip().lower()
        if val not in SSL_MODES:
            raise ValueError(f"Invalid sslmode '{v}'. Supported: {', '.join(SSL_MODES)}")
        return val

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        # Unknown levels are not fatal: the driver falls back to error
        return str(v or "error").strip().lower()

    @model_validator(mode='after')
    def validate_pool_bounds(self):
        if self.pool_max_size < self.pool_min_size:
            raise ValueError(
                f"pool_max_size ({self.pool_max_size}) must be >= pool_min_size ({self.pool_min_size})"
            )
        return self

    @property
    def conninfo(self) -> str:
        """libpq connection string built from the individual fields."""
        return make_conninfo(
            user=self.user,
            password=self.password or None,
            host=self.host,
            port=self.port,
            dbname=self.dbname,
            sslmode=self.sslmode,
            application_name=self.application_name,
        )

    def safe_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        if data.get("password"):
            data["password"] = "*" * len(data["password"])
        return data

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "DatabaseConfig":
        """
        Read a YAML config file. A top-level ``database`` section is used when
        present, otherwise the whole document is the database section.
        """
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        section = raw.get("database", raw)
        if not isinstance(section, dict):
            raise ValueError(f"'database' section of {path} must be a mapping")
        return cls.model_validate(section)

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "DatabaseConfig":
        """
        Build the config from PGUPSERT_* variables, falling back to the
        conventional POSTGRES_* names.
        """
        if env is None:
            load_env_if_present()
            env = dict(os.environ)

        def pick(*names: str) -> Optional[str]:
            for name in names:
                value = env.get(name)
                if value is not None and value.strip():
                    return value.strip()
            return None

        mapping = {
            "user": pick("PGUPSERT_USER", "POSTGRES_USER"),
            "password": pick("PGUPSERT_PASSWORD", "POSTGRES_PASSWORD"),
            "host": pick("PGUPSERT_HOST", "POSTGRES_HOST"),
            "port": pick("PGUPSERT_PORT", "POSTGRES_PORT"),
            "dbname": pick("PGUPSERT_DB", "POSTGRES_DB"),
            "sslmode": pick("PGUPSERT_SSLMODE", "PGSSLMODE"),
            "log_level": pick("PGUPSERT_LOG_LEVEL"),
            "application_name": pick("PGUPSERT_APPLICATION_NAME"),
            "pool_min_size": pick("PGUPSERT_POOL_MIN_SIZE"),
            "pool_max_size": pick("PGUPSERT_POOL_MAX_SIZE"),
            "pool_timeout": pick("PGUPSERT_POOL_TIMEOUT_SECONDS"),
        }
        return cls.model_validate({k: v for k, v in mapping.items() if v is not None})


def load_config(path: Optional[Union[str, Path]] = None) -> DatabaseConfig:
    """Config from a YAML file when a path is given, else from the environment."""
    if path:
        return DatabaseConfig.from_yaml(path)
    return DatabaseConfig.from_env()
