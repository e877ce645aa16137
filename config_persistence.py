import json
import os
from dataclasses import asdict
from pathlib import Path

from config import (
    Config,
    apply_dict_to_dataclass,
    migrate_config,
)
from logging_utils import log_event


def get_config_dir() -> Path:
    """Get config directory - $IRSCOPE_HOME when set, ~/.irscope otherwise."""
    override = os.environ.get("IRSCOPE_HOME")
    config_dir = Path(override) if override else Path.home() / '.irscope'
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_file() -> Path:
    """Get config file path."""
    return get_config_dir() / 'config.json'


def get_taste_store_file(config: Config) -> Path:
    """Taste model file, relative names resolve inside the config dir."""
    path = Path(config.taste.store_file)
    return path if path.is_absolute() else get_config_dir() / path


def get_learner_file(config: Config) -> Path:
    path = Path(config.taste.learner_file)
    return path if path.is_absolute() else get_config_dir() / path


def get_profiles_file(config: Config) -> Path:
    path = Path(config.profiles_file)
    return path if path.is_absolute() else get_config_dir() / path


def get_report_dir() -> Path:
    return get_config_dir() / 'reports'


def save_config(config: Config) -> bool:
    """Save config to JSON file."""
    try:
        config_file = get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, 'w', encoding='utf-8') as f:
            json.dump(asdict(config), f, indent=2)
        log_event("INFO", "Config", "Saved", path=config_file)
        return True
    except (OSError, TypeError, ValueError) as e:
        log_event("ERROR", "Config", "Failed to save", error=e)
        return False


def load_config() -> Config:
    """Load config from JSON file, returns default if not found."""
    try:
        config_file = get_config_file()
        if config_file.exists():
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)

            config = Config()
            apply_dict_to_dataclass(config, data)
            loaded_version = data.get('version') if isinstance(data, dict) else None
            migrate_config(config, loaded_version)

            log_event("INFO", "Config", "Loaded", path=config_file, version=config.version)

            if loaded_version != config.version:
                if not save_config(config):
                    log_event("WARNING", "Config", "Could not auto-save migrated config")
            return config

        log_event("INFO", "Config", "No saved config found, using defaults")
        return Config()
    except (OSError, ValueError) as e:
        log_event("ERROR", "Config", "Failed to load, using defaults", error=e)
        return Config()
