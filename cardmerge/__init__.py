"""
Card Merge Generator - Flask Application Factory
Composites spreadsheet rows onto image templates as previews and print-ready batch PDFs
"""

import os
from pathlib import Path
from flask import Flask
from loguru import logger
from dotenv import load_dotenv

from .config import load_config, set_config
from .storage import DatasetStore, FilesystemStorage, TemplateStore


def create_app(config_name=None, config_overrides=None):
    """Flask application factory"""

    # Load environment variables
    load_dotenv()

    app = Flask(__name__)

    # Load configuration
    environment = config_name or os.getenv('FLASK_ENV', 'development')
    config = load_config(environment, overrides=config_overrides)
    set_config(config)
    app.config.update(config.model_dump())
    app.config['MAX_CONTENT_LENGTH'] = config.MAX_UPLOAD_SIZE

    # Configure logging
    setup_logging(app)

    # Ensure data directories exist
    setup_directories(app)

    data_root = Path(app.config['DATA_FOLDER'])
    app.extensions['cardmerge'] = {
        'storage': FilesystemStorage(data_root / 'files'),
        'templates': TemplateStore(data_root / 'templates'),
        'datasets': DatasetStore(data_root / 'datasets'),
    }

    # Register blueprints
    from . import routes
    app.register_blueprint(routes.bp)
    app.register_blueprint(routes.files_bp, url_prefix=f"/{config.FILES_PREFIX.strip('/')}")

    logger.info(f"Card Merge Generator initialized in {environment} mode")

    return app


def setup_logging(app):
    """Configure loguru logging"""
    log_level = app.config.get('LOG_LEVEL', 'INFO')
    log_file = app.config.get('LOG_FILE', 'logs/app.log')

    # Ensure logs directory exists
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_file,
        rotation="1 day",
        retention="30 days",
        level=log_level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"
    )


def setup_directories(app):
    """Ensure required directories exist"""
    dirs = [
        app.config.get('DATA_FOLDER', 'data'),
        app.config.get('TEMP_FOLDER', 'tmp'),
    ]

    for dir_path in dirs:
        Path(dir_path).mkdir(parents=True, exist_ok=True)
