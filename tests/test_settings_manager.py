import json

import pytest

from citavoz import settings_manager
from citavoz.appointment_models import Consultant


def write_settings(data):
    settings_manager.get_settings_file().write_text(json.dumps(data), encoding="utf-8")


def test_defaults_without_file():
    settings = settings_manager.load_settings()

    assert settings["work_start_hour"] == 8
    assert settings["work_end_hour"] == 18
    assert settings["max_suggested_slots"] == 5
    assert settings_manager.get_work_hours() == (8, 18)
    assert settings_manager.get_min_transcript_length() == 3
    assert settings_manager.get_error_display_seconds() == 3.0


def test_settings_file_follows_environment(tmp_path):
    assert settings_manager.get_settings_file() == tmp_path / "settings.json"


def test_file_values_are_merged_over_defaults():
    write_settings({"max_suggested_slots": 3, "unknown_key": True})

    settings = settings_manager.load_settings()

    assert settings["max_suggested_slots"] == 3
    assert settings["work_end_hour"] == 18
    assert "unknown_key" not in settings


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_broken_file_falls_back_to_defaults(content):
    settings_manager.get_settings_file().write_text(content, encoding="utf-8")
    assert settings_manager.get_work_hours() == (8, 18)


def test_defaults_are_not_shared_between_loads():
    settings = settings_manager.load_settings()
    settings["consultants"].append({"id": "9", "name": "Temporal"})

    assert len(settings_manager.load_settings()["consultants"]) == 3


def test_set_work_hours_round_trips(tmp_path):
    settings_manager.set_work_hours(7, 15)

    assert settings_manager.get_work_hours() == (7, 15)
    assert json.loads((tmp_path / "settings.json").read_text(encoding="utf-8"))["work_start_hour"] == 7


def test_save_creates_missing_directory(tmp_path, monkeypatch):
    target = tmp_path / "nested" / "dir" / "settings.json"
    monkeypatch.setenv("CITAVOZ_SETTINGS_FILE", str(target))

    settings_manager.save_settings({"max_suggested_slots": 2})

    assert target.exists()
    assert settings_manager.get_max_suggested_slots() == 2


@pytest.mark.parametrize("start, end", [(10, 9), (8, 8), (-1, 12), (8, 25), (True, 12)])
def test_set_work_hours_rejects_invalid_values(start, end):
    with pytest.raises(ValueError):
        settings_manager.set_work_hours(start, end)


def test_invalid_stored_values_use_defaults():
    write_settings({
        "work_start_hour": 20,
        "work_end_hour": 6,
        "max_suggested_slots": 0,
        "default_duration_minutes": "treinta",
        "min_transcript_length": -1,
        "error_display_seconds": "pronto",
    })

    assert settings_manager.get_work_hours() == (8, 18)
    assert settings_manager.get_max_suggested_slots() == 5
    assert settings_manager.get_default_duration_minutes() == 30
    assert settings_manager.get_min_transcript_length() == 3
    assert settings_manager.get_error_display_seconds() == 3.0


def test_default_roster_order():
    assert settings_manager.get_consultants() == [
        Consultant(id="1", name="Dr. Carlos Parra"),
        Consultant(id="2", name="Dra. Ana López"),
        Consultant(id="3", name="Carlos Mayaudon"),
    ]


def test_configured_roster_skips_invalid_entries():
    write_settings({"consultants": [
        {"id": 7, "name": "Dra. Sofía Ríos"},
        {"id": "8"},
        "Dr. Nadie",
        {"id": "9", "name": "Dr. Pablo Díaz"},
    ]})

    assert settings_manager.get_consultants() == [
        Consultant(id="7", name="Dra. Sofía Ríos"),
        Consultant(id="9", name="Dr. Pablo Díaz"),
    ]


def test_roster_that_is_not_a_list_uses_defaults():
    write_settings({"consultants": {"id": "1"}})
    assert len(settings_manager.get_consultants()) == 3
