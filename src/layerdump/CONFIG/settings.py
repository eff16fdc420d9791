# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Runtime settings.
Values come from defaults, an optional YAML file, a .env file and
LAYERDUMP_* environment variables, later sources overriding earlier ones.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..exceptions import ConfigError

ENV_PREFIX = "LAYERDUMP_"
CONFIG_ENV_VAR = "LAYERDUMP_CONFIG"


def default_cache_dir() -> Path:
    return Path.home() / ".layerdump" / "cache"


class Settings(BaseModel):
    """
    Settings shared by the CLI and the image acquisition layer.
    """
    cache_dir: Path = Field(default_factory=default_cache_dir)
    use_cache: bool = True
    scratch_dir: Optional[Path] = None

    log_level: str = "WARNING"
    log_file: Optional[Path] = None

    docker_timeout: int = Field(default=120, gt=0)
    export_retries: int = Field(default=3, ge=1)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level: {value}")
        return level

    @classmethod
    def load(cls,
             config_file: Optional[str] = None,
             env_file: Optional[str] = ".env",
             environ: Optional[Mapping[str, str]] = None,
             **overrides: Any) -> "Settings":
        """
        Builds settings from every source.

        Args:
            config_file: YAML settings file. Falls back to $LAYERDUMP_CONFIG.
            env_file: .env file to read LAYERDUMP_* variables from, if present.
            environ: Environment to read; defaults to os.environ.
            overrides: Explicit values (e.g. CLI flags); None values are ignored.

        Returns:
            Validated Settings.

        Raises:
            ConfigError: If a file cannot be read or a value is invalid.
        """
        environ = dict(os.environ if environ is None else environ)
        if env_file and os.path.exists(env_file):
            file_env = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
            environ = {**file_env, **environ}

        values: Dict[str, Any] = {}

        config_file = config_file or environ.get(CONFIG_ENV_VAR)
        if config_file:
            values.update(cls._load_yaml(config_file))

        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX) or key == CONFIG_ENV_VAR:
                continue
            field = key[len(ENV_PREFIX):].lower()
            if field in cls.model_fields:
                values[field] = value

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {e}") from e

    @staticmethod
    def _load_yaml(path: str) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read settings file {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {path} must contain a mapping")
        return data
