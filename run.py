"""Development server for the clinic booking backend."""
from __future__ import annotations

from clinic import create_app
from clinic.extensions import db


def main() -> None:
    flask_app = create_app()
    with flask_app.app_context():
        db.create_all()

    settings = flask_app.extensions["clinic_settings"]
    flask_app.logger.info(
        "Clinic hours %s-%s (%s), slots every %s minutes",
        settings.workday_start, settings.workday_end, settings.timezone, settings.slot_step_minutes,
    )
    flask_app.run(
        host=flask_app.config["CLINIC_HOST"],
        port=flask_app.config["CLINIC_PORT"],
        debug=flask_app.config["DEBUG"],
    )


if __name__ == "__main__":
    main()
