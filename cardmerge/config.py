"""
Configuration management for Card Merge Generator
Loads settings from YAML files with environment variable overrides
"""

import os
import yaml
from pathlib import Path
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from loguru import logger


class AppConfig(BaseModel):
    """Main application configuration"""

    # Flask settings
    SECRET_KEY: str = Field(default_factory=lambda: os.urandom(24).hex())
    FLASK_ENV: str = "development"
    DEBUG: bool = True
    TESTING: bool = False

    # Paths
    DATA_FOLDER: str = "data"  # object storage buckets + template/dataset documents
    TEMP_FOLDER: str = "tmp"
    FILES_PREFIX: str = "files"  # internal storage URLs look like /files/<bucket>/<id>

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"

    # Uploads
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    ALLOWED_IMAGE_EXTENSIONS: List[str] = [".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"]
    ALLOWED_DATASET_EXTENSIONS: List[str] = [".csv", ".tsv", ".xlsx"]

    # Page layout (points)
    PAGE_SIZE: str = "A4"
    PAGE_MARGIN: float = 20.0
    CARD_WIDTH_MIN: float = 200.0
    CARD_WIDTH_MAX: float = 400.0
    CARD_WIDTH_STEP: float = 20.0
    CARD_WIDTH_FALLBACK: float = 280.0

    # Card rendering
    SORT_FIELDS_BY_Z_INDEX: bool = True
    DEFAULT_FONT_FAMILY: str = "Arial"
    DEFAULT_FONT_SIZE: int = 18
    HTTP_TIMEOUT_SECONDS: float = 10.0
    RENDER_WORKERS: int = 1

    # CMYK conversion
    GHOSTSCRIPT_PATH: Optional[str] = None  # Auto-detect if None
    CMYK_TIMEOUT_SECONDS: float = 30.0
    CMYK_IMAGE_QUALITY: str = "high"  # high, medium, low


def load_yaml_config(file_path: str) -> Dict:
    """Load configuration from YAML file"""
    path = Path(file_path)
    if not path.exists():
        logger.warning(f"Config file not found: {file_path}")
        return {}

    try:
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config file {file_path}: {e}")
        return {}


def load_config(environment: str = "development", overrides: Optional[Dict] = None) -> AppConfig:
    """Load configuration with environment-specific overrides"""

    # Load base settings
    base_config = load_yaml_config("config/settings.yaml")

    # Load environment-specific settings
    env_config = load_yaml_config(f"config/settings_{environment}.yaml")

    # Merge configurations (env overrides base)
    config_dict = {**base_config, **env_config}

    # Apply environment variable overrides
    env_overrides = {
        'GHOSTSCRIPT_PATH': os.getenv('GHOSTSCRIPT_PATH'),
        'DATA_FOLDER': os.getenv('DATA_FOLDER'),
        'TEMP_FOLDER': os.getenv('TEMP_FOLDER'),
        'FLASK_ENV': os.getenv('FLASK_ENV', environment),
        'LOG_LEVEL': os.getenv('LOG_LEVEL'),
        'SECRET_KEY': os.getenv('SECRET_KEY'),
        'RENDER_WORKERS': os.getenv('RENDER_WORKERS'),
    }

    # Only include non-None values
    env_overrides = {k: v for k, v in env_overrides.items() if v is not None}
    config_dict.update(env_overrides)

    # Special handling for boolean DEBUG flag
    if 'FLASK_ENV' in config_dict:
        config_dict['DEBUG'] = config_dict['FLASK_ENV'] == 'development'

    # Explicit overrides (app factory, tests) win over everything else
    if overrides:
        config_dict.update(overrides)

    try:
        return AppConfig(**config_dict)
    except ValueError as e:
        logger.error(f"Configuration validation error: {e}")
        # Return default config on validation error
        return AppConfig()


# Global config instance
_config_instance = None

def get_config() -> AppConfig:
    """Get the process-wide configuration instance, loading it on first use"""
    global _config_instance
    if _config_instance is None:
        _config_instance = load_config(os.getenv('FLASK_ENV', 'development'))
    return _config_instance


def set_config(config: AppConfig) -> None:
    """Replace the process-wide configuration (used by the app factory)"""
    global _config_instance
    _config_instance = config
