from flask import Flask, jsonify
from flask_cors import CORS

from .config import Config, settings_from_config
from .errors import ClinicError, InvariantViolationError
from .extensions import db
from .routes import register_routes
from .timeutils import Clock


def create_app(config_object=None, clock=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_object(Config)
    if config_object:
        app.config.from_object(config_object)
    else:
        app.config.from_envvar("CLINIC_SETTINGS", silent=True)

    db.init_app(app)

    origins = app.config.get("CORS_ORIGINS", "*")
    if isinstance(origins, str):
        origins = [origin.strip() for origin in origins.split(",") if origin.strip()]

    # Allow the booking widget and the back office to talk to the backend
    CORS(app,
         origins=origins,
         supports_credentials=True,
         allow_headers=["Content-Type", "X-Actor-Id"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    )

    settings = settings_from_config(app.config)
    app.extensions["clinic_settings"] = settings
    app.extensions["clinic_clock"] = clock or Clock(settings.timezone)

    register_error_handlers(app)
    register_routes(app)

    return app


def register_error_handlers(app):
    @app.errorhandler(ClinicError)
    def handle_clinic_error(exc):
        if isinstance(exc, InvariantViolationError):
            app.logger.error("Data integrity problem: %s", exc.to_dict())
        return jsonify(exc.to_dict()), exc.status_code
