"""
Configuration for clickhouse-backup.

The configuration is read once at startup from a YAML file, overlaid with
environment variables named ``<SECTION>_<KEY>`` (for example
``S3_SECRET_KEY`` or ``CLICKHOUSE_PASSWORD``) and then passed explicitly to
every component.
"""

import os
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CONFIG_PATH = '/etc/clickhouse-backup/config.yml'


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""
    pass


class SectionSettings(BaseSettings):
    """
    One configuration section.

    Values come from the config file (init arguments) and are overridden by
    environment variables carrying the section's prefix. Only declared keys
    are read from the environment; unknown keys in the file are rejected.
    """
    model_config = SettingsConfigDict(extra='forbid', case_sensitive=False)

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        return env_settings, init_settings


class ClickHouseConfig(SectionSettings):
    model_config = SettingsConfigDict(env_prefix='CLICKHOUSE_')

    username: str = 'default'
    password: str = ''
    host: str = 'localhost'
    port: int = Field(9000, gt=0, lt=65536)
    data_path: str = ''


class S3Config(SectionSettings):
    model_config = SettingsConfigDict(env_prefix='S3_')

    access_key: str = ''
    secret_key: str = ''
    bucket: str = ''
    endpoint: str = ''
    region: str = 'us-east-1'
    acl: str = 'private'
    force_path_style: bool = False
    path: str = ''
    disable_ssl: bool = False


class BackupConfig(SectionSettings):
    model_config = SettingsConfigDict(env_prefix='BACKUP_')

    strategy: Literal['tree', 'archive'] = 'tree'
    backups_to_keep: int = Field(0, ge=0)


class LoggingConfig(SectionSettings):
    model_config = SettingsConfigDict(env_prefix='LOGGING_')

    level: str = 'INFO'
    file: str = ''


class Config(BaseModel):
    """Complete configuration of one command invocation"""
    model_config = ConfigDict(extra='forbid')

    clickhouse: ClickHouseConfig = Field(default_factory=ClickHouseConfig)
    s3: S3Config = Field(default_factory=S3Config)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    dry_run: bool = False


SECTIONS = {
    'clickhouse': ClickHouseConfig,
    's3': S3Config,
    'backup': BackupConfig,
    'logging': LoggingConfig,
}


def config_from_dict(data: Optional[Dict[str, Any]]) -> Config:
    """
    Build a Config from parsed YAML data and the environment.

    Args:
        data: Mapping of section name to section mapping

    Returns:
        Validated Config

    Raises:
        ConfigError: If the data has unknown sections/keys or invalid values
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    values = {name: value for name, value in data.items() if name not in SECTIONS}
    for name, section_cls in SECTIONS.items():
        section_data = data.get(name) or {}
        if not isinstance(section_data, dict):
            raise ConfigError(f"Section '{name}' must be a mapping")
        try:
            values[name] = section_cls(**section_data)
        except ValidationError as e:
            raise ConfigError(f"Invalid '{name}' section: {e}") from e

    try:
        return Config(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from a YAML file and the environment.

    A missing file is not an error: defaults and environment overrides are
    used instead.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    data = {}
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config {config_path}: {e}") from e
    return config_from_dict(data)


def default_config_yaml() -> str:
    """Render the built-in defaults, ignoring the environment, as YAML."""
    defaults = Config.model_construct(**{
        name: section_cls.model_construct() for name, section_cls in SECTIONS.items()
    })
    return yaml.safe_dump(
        defaults.model_dump(exclude={'dry_run'}),
        default_flow_style=False,
        sort_keys=False
    )
