"""
Manages loading, saving, and validating the service configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import re
import logging
from pathlib import Path
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import DATABASE_FILE, DEFAULT_ALLOWED_HOSTS

# Environment variables that take precedence over the config file.
ENV_OVERRIDES = {
    'PORT': 'port',
    'FRONTEND_ORIGIN': 'frontend_origin',
    'YTPIPE_LOG_LEVEL': 'log_level',
}


class Settings(BaseModel):
    """
    Defines the service's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    host: str = '0.0.0.0'
    port: int = Field(default=3000, ge=1, le=65535)
    frontend_origin: str = '*'
    trust_proxy: bool = True
    allowed_hosts: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_HOSTS))
    rate_limit_requests: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    max_concurrent_jobs: int = Field(default=8, ge=1, le=64)
    audio_bitrate: str = '192k'
    cleanup_grace_seconds: float = Field(default=60.0, ge=0)
    output_claim_timeout_seconds: float = Field(default=600.0, gt=0)
    title_timeout_seconds: float = Field(default=30.0, gt=0)
    terminate_timeout_seconds: float = Field(default=5.0, gt=0)
    yt_dlp_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None
    persist_jobs: bool = True
    database_path: Path = DATABASE_FILE
    persisted_job_retention_seconds: float = Field(default=3600.0, ge=0)
    log_level: str = 'INFO'
    log_archive_count: int = Field(default=10, ge=0)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('audio_bitrate')
    @classmethod
    def validate_audio_bitrate(cls, value: str) -> str:
        """Ensures the bitrate is an ffmpeg kilobit value such as '192k'."""
        value = value.strip().lower()
        if not re.fullmatch(r'\d{2,3}k', value):
            raise ValueError(f"'{value}' is not a valid audio bitrate. Use a value like '192k'.")
        return value

    @field_validator('allowed_hosts')
    @classmethod
    def validate_allowed_hosts(cls, value: List[str]) -> List[str]:
        """Normalizes host names and rejects an empty list."""
        hosts = [host.strip().lower() for host in value if host.strip()]
        if not hosts:
            raise ValueError("allowed_hosts must name at least one host.")
        return hosts


class ConfigManager:
    """Handles loading and saving the service configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        # Ensure the configuration directory exists
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")


def apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    """
    Returns `settings` with any `ENV_OVERRIDES` variables applied and revalidated.

    Raises:
        ValidationError: If an override holds an invalid value.
    """
    overrides = {field: environ[name] for name, field in ENV_OVERRIDES.items() if environ.get(name)}
    if not overrides:
        return settings
    return Settings.model_validate({**settings.model_dump(), **overrides})
