"""Load monitor settings from YAML files."""

from pathlib import Path

import yaml

from sixty.integration_health.models.settings import MonitorSettings


def load_settings(settings_file: Path) -> MonitorSettings:
    """Load monitor settings from a YAML file.

    Args:
        settings_file: Path to the YAML settings file

    Returns:
        Parsed settings; an empty file yields the defaults

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        ValueError: If YAML is invalid or doesn't match schema

    """
    if not settings_file.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_file}")

    try:
        with settings_file.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {settings_file}: {e}") from e

    if data is None:
        return MonitorSettings()

    if not isinstance(data, dict):
        raise ValueError(f"Settings in {settings_file} must be a mapping")

    try:
        return MonitorSettings.model_validate(data)
    except Exception as e:
        raise ValueError(f"Invalid settings schema in {settings_file}: {e}") from e


def load_settings_or_default(settings_file: Path | None) -> MonitorSettings:
    """Load settings when a file is given, otherwise return the defaults."""
    if settings_file is None:
        return MonitorSettings()
    return load_settings(settings_file)
