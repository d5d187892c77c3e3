# -*- coding: utf-8 -*-
"""
Incentra - Application initialisation
Incentive compensation calculation engine
"""

import logging
from logging.handlers import RotatingFileHandler

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

from config import Config, APP_CONFIG, LOGGING_CONFIG

db = SQLAlchemy()


def configure_logging(app):
    """Attach the configured handlers to the root logger (once)"""
    root = logging.getLogger()
    root.setLevel(LOGGING_CONFIG['level'])

    formatter = logging.Formatter(LOGGING_CONFIG['format'], LOGGING_CONFIG['date_format'])

    if not any(getattr(h, '_incentra', False) for h in root.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        stream._incentra = True
        root.addHandler(stream)

    log_file = app.config.get('LOG_FILE')
    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=LOGGING_CONFIG['max_bytes'],
            backupCount=LOGGING_CONFIG['backup_count'],
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def create_app(config_class=Config):
    """Flask application factory"""
    app = Flask(__name__)
    app.config.from_object(config_class)

    configure_logging(app)

    # Extensions
    db.init_app(app)

    # Models must be imported after db.init_app() and before db.create_all()
    from app import models  # noqa: F401

    # Blueprints
    from app.api.routes import api_bp
    app.register_blueprint(api_bp, url_prefix='/api')

    with app.app_context():
        db.create_all()

    logging.getLogger(__name__).info(
        "%s %s started (workers=%s)",
        APP_CONFIG['APP_NAME'], APP_CONFIG['VERSION'], app.config.get('CALC_WORKERS'),
    )

    return app
