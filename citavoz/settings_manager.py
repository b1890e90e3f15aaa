"""
Application settings for the scheduling core.

Tracks working hours, the suggestion cap of the slot finder, capture
thresholds and the consultant roster. Settings are read from a JSON file
(CITAVOZ_SETTINGS_FILE, else ~/.config/citavoz/settings.json) and merged
over the defaults, so a missing or broken file never stops the app.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import List, TypedDict

from citavoz.appointment_models import Consultant
from citavoz.logging_helper import Log


class ConsultantEntry(TypedDict):
    id: str
    name: str


class SettingsSchema(TypedDict, total=False):
    work_start_hour: int
    work_end_hour: int
    max_suggested_slots: int
    default_duration_minutes: int
    min_transcript_length: int
    error_display_seconds: float
    consultants: List[ConsultantEntry]


DEFAULT_SETTINGS: SettingsSchema = {
    "work_start_hour": 8,
    "work_end_hour": 18,
    "max_suggested_slots": 5,
    "default_duration_minutes": 30,
    "min_transcript_length": 3,
    "error_display_seconds": 3.0,
    "consultants": [
        {"id": "1", "name": "Dr. Carlos Parra"},
        {"id": "2", "name": "Dra. Ana López"},
        {"id": "3", "name": "Carlos Mayaudon"},
    ],
}


def get_settings_file() -> Path:
    configured = os.environ.get("CITAVOZ_SETTINGS_FILE")
    if configured:
        return Path(configured)
    return Path.home() / ".config" / "citavoz" / "settings.json"


def _defaults() -> SettingsSchema:
    # Deep enough copy: the roster list is the only mutable value
    settings: SettingsSchema = dict(DEFAULT_SETTINGS)  # type: ignore[assignment]
    settings["consultants"] = [dict(c) for c in DEFAULT_SETTINGS["consultants"]]  # type: ignore[misc]
    return settings


def load_settings() -> SettingsSchema:
    """
    Load settings from disk, falling back to defaults if anything fails.
    """
    settings_file = get_settings_file()
    if not settings_file.exists():
        Log.info(f"Settings file not found, using defaults: {settings_file}")
        return _defaults()

    try:
        data = json.loads(settings_file.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("Settings data is not a JSON object")
    except (OSError, ValueError) as err:
        Log.warn(f"Failed to read settings file ({settings_file}): {err}")
        return _defaults()

    merged = _defaults()
    # Merge only known keys
    for key in DEFAULT_SETTINGS:
        if key in data:
            merged[key] = data[key]  # type: ignore[literal-required]
    return merged


def save_settings(settings: SettingsSchema) -> None:
    """
    Persist settings to disk.
    """
    settings_file = get_settings_file()
    try:
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        settings_file.write_text(
            json.dumps(settings, indent=2, sort_keys=True, ensure_ascii=False),
            encoding="utf-8",
        )
    except OSError as err:
        Log.warn(f"Failed to write settings file ({settings_file}): {err}")


def get_work_hours() -> tuple[int, int]:
    settings = load_settings()
    start = settings.get("work_start_hour", DEFAULT_SETTINGS["work_start_hour"])
    end = settings.get("work_end_hour", DEFAULT_SETTINGS["work_end_hour"])
    if not _valid_work_hours(start, end):
        Log.warn(f"Invalid work hours {start}-{end}, defaulting to 8-18")
        return DEFAULT_SETTINGS["work_start_hour"], DEFAULT_SETTINGS["work_end_hour"]
    return start, end


def set_work_hours(start_hour: int, end_hour: int) -> None:
    if not _valid_work_hours(start_hour, end_hour):
        raise ValueError(f"Invalid work hours: {start_hour}-{end_hour}")
    settings = load_settings()
    settings["work_start_hour"] = start_hour
    settings["work_end_hour"] = end_hour
    save_settings(settings)
    Log.info(f"Saved work hours setting: {start_hour}-{end_hour}")


def _valid_work_hours(start, end) -> bool:
    return (
        isinstance(start, int)
        and isinstance(end, int)
        and not isinstance(start, bool)
        and not isinstance(end, bool)
        and 0 <= start < end <= 24
    )


def _positive_int(key: str) -> int:
    value = load_settings().get(key, DEFAULT_SETTINGS[key])  # type: ignore[literal-required]
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        Log.warn(f"Invalid {key} value '{value}', using default")
        return DEFAULT_SETTINGS[key]  # type: ignore[literal-required]
    return value


def get_max_suggested_slots() -> int:
    return _positive_int("max_suggested_slots")


def get_default_duration_minutes() -> int:
    return _positive_int("default_duration_minutes")


def get_min_transcript_length() -> int:
    value = load_settings().get("min_transcript_length", DEFAULT_SETTINGS["min_transcript_length"])
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        Log.warn(f"Invalid min_transcript_length value '{value}', using default")
        return DEFAULT_SETTINGS["min_transcript_length"]
    return value


def get_error_display_seconds() -> float:
    value = load_settings().get("error_display_seconds", DEFAULT_SETTINGS["error_display_seconds"])
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        Log.warn(f"Invalid error_display_seconds value '{value}', using default")
        return DEFAULT_SETTINGS["error_display_seconds"]
    return float(value)


def get_consultants() -> List[Consultant]:
    """Return the consultant roster in configured order."""
    roster = load_settings().get("consultants", DEFAULT_SETTINGS["consultants"])
    consultants: List[Consultant] = []
    if not isinstance(roster, list):
        Log.warn("Consultant roster is not a list, using defaults")
        roster = DEFAULT_SETTINGS["consultants"]
    for entry in roster:
        if not isinstance(entry, dict) or not entry.get("id") or not entry.get("name"):
            Log.warn(f"Skipping invalid consultant entry: {entry}")
            continue
        consultants.append(Consultant(id=str(entry["id"]), name=str(entry["name"])))
    return consultants
