#!/usr/bin/env python3
"""Create the clinic tables and seed a small clinic: services, staff and weekly hours."""
import sys
from datetime import time
from pathlib import Path

# Add the parent directory to the path so we can import the app
sys.path.insert(0, str(Path(__file__).parent.parent))

from clinic import create_app
from clinic.extensions import db
from clinic.models import Service, Staff, StaffSchedule

SERVICES = [
    {"name": "Laser hair removal", "duration_minutes": 60, "price_cents": 8000},
    {"name": "Facial cleansing", "duration_minutes": 45, "price_cents": 5500},
    {
        "name": "Laser 6-session package",
        "duration_minutes": 60,
        "price_cents": 42000,
        "is_package": True,
        "total_sessions": 6,
    },
    {
        "name": "Massage 300 minutes",
        "duration_minutes": 30,
        "price_cents": 30000,
        "is_package": True,
        "total_minutes": 300,
    },
]

# weekday: 0=Sunday ... 6=Saturday
STAFF = [
    {"name": "Anna Rossi", "email": "anna@clinic.example", "days": range(1, 6), "hours": (time(9, 0), time(17, 0))},
    {"name": "Marco Bianchi", "email": "marco@clinic.example", "days": range(2, 7), "hours": (time(10, 0), time(19, 0))},
]


def seed_clinic():
    app = create_app()

    with app.app_context():
        db.create_all()
        print("✅ Clinic tables ready")

        if Service.query.count() > 0:
            print("⏭️  Services already present. Skipping...")
            return

        services = [Service(**fields) for fields in SERVICES]
        db.session.add_all(services)

        for entry in STAFF:
            staff = Staff(name=entry["name"], email=entry["email"])
            staff.services = list(services)
            start, end = entry["hours"]
            for weekday in entry["days"]:
                staff.schedules.append(StaffSchedule(weekday=weekday, start_time=start, end_time=end))
            db.session.add(staff)

        db.session.commit()
        print(f"✅ Added {len(services)} services and {len(STAFF)} staff members")


if __name__ == "__main__":
    seed_clinic()
