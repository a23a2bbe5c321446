"""Configuration for the clinic backend.

Values are read from the environment once, when the module is imported, and
can be overridden by passing another object to ``create_app``.
"""
from __future__ import annotations

import os
from datetime import time
from typing import NamedTuple

from flask import current_app

from .timeutils import Clock, parse_time

ALLOWED_SLOT_STEPS = (5, 10, 15, 20, 30, 60)

_TRUTHY = {"1", "true", "True"}


def as_bool(value) -> bool:
    """Config flag from a bool or an env-style string ("1", "true", "True")."""
    if isinstance(value, str):
        return value.strip() in _TRUTHY
    return bool(value)


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///clinic.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    CLINIC_TIMEZONE = os.environ.get("CLINIC_TZ", "UTC")
    CLINIC_WORKDAY_START = os.environ.get("CLINIC_WORKDAY_START", "10:00:00")
    CLINIC_WORKDAY_END = os.environ.get("CLINIC_WORKDAY_END", "19:00:00")
    CLINIC_SLOT_STEP_MINUTES = int(os.environ.get("CLINIC_SLOT_STEP", 15))
    # Guests must book at least N minutes from "now"
    CLINIC_MIN_NOTICE_MINUTES = int(os.environ.get("CLINIC_MIN_NOTICE", 30))
    # Customers must cancel at least N minutes before the start
    CLINIC_CANCEL_NOTICE_MINUTES = int(os.environ.get("CLINIC_CANCEL_NOTICE", 120))
    CLINIC_ALLOW_PAST_DATES = as_bool(os.environ.get("CLINIC_ALLOW_PAST_DATES", "0"))
    CLINIC_DEFAULT_CURRENCY = os.environ.get("CLINIC_CURRENCY", "EUR")
    CLINIC_PAYMENT_TOLERANCE_CENTS = int(os.environ.get("CLINIC_PAYMENT_TOLERANCE_CENTS", 1))

    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    # Development server (run.py)
    CLINIC_HOST = os.environ.get("CLINIC_HOST", "127.0.0.1")
    CLINIC_PORT = int(os.environ.get("PORT", 5000))
    DEBUG = as_bool(os.environ.get("FLASK_DEBUG", "0"))


class ClinicSettings(NamedTuple):
    """Resolved clinic settings handed to the scheduling and ledger code."""

    timezone: str
    workday_start: time
    workday_end: time
    slot_step_minutes: int
    min_notice_minutes: int
    cancel_notice_minutes: int
    allow_past_dates: bool
    default_currency: str
    payment_tolerance_cents: int


def settings_from_config(config) -> ClinicSettings:
    """Build ``ClinicSettings`` from a Flask config mapping."""
    workday_start = parse_time(config.get("CLINIC_WORKDAY_START", "10:00:00"), field="CLINIC_WORKDAY_START")
    workday_end = parse_time(config.get("CLINIC_WORKDAY_END", "19:00:00"), field="CLINIC_WORKDAY_END")
    if workday_end <= workday_start:
        raise ValueError("CLINIC_WORKDAY_END must be after CLINIC_WORKDAY_START")

    step = int(config.get("CLINIC_SLOT_STEP_MINUTES", 15))
    if step not in ALLOWED_SLOT_STEPS:
        raise ValueError(f"CLINIC_SLOT_STEP_MINUTES must be one of {ALLOWED_SLOT_STEPS}")

    return ClinicSettings(
        timezone=config.get("CLINIC_TIMEZONE", "UTC"),
        workday_start=workday_start,
        workday_end=workday_end,
        slot_step_minutes=step,
        min_notice_minutes=int(config.get("CLINIC_MIN_NOTICE_MINUTES", 30)),
        cancel_notice_minutes=int(config.get("CLINIC_CANCEL_NOTICE_MINUTES", 120)),
        allow_past_dates=as_bool(config.get("CLINIC_ALLOW_PAST_DATES", False)),
        default_currency=str(config.get("CLINIC_DEFAULT_CURRENCY", "EUR")).upper(),
        payment_tolerance_cents=int(config.get("CLINIC_PAYMENT_TOLERANCE_CENTS", 1)),
    )


def get_settings() -> ClinicSettings:
    return current_app.extensions["clinic_settings"]


def get_clock() -> Clock:
    """Clock of the current app; tests swap in a ``FixedClock``."""
    return current_app.extensions["clinic_clock"]
