import os
import tempfile
from datetime import datetime

import pytest

# Keep test logs out of the working tree
os.environ.setdefault("CITAVOZ_LOG_DIR", tempfile.mkdtemp(prefix="citavoz-logs-"))

from citavoz.appointment_models import Appointment, AppointmentStatus, ServiceType  # noqa: E402

DAY = datetime(2026, 10, 19)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("CITAVOZ_SETTINGS_FILE", str(tmp_path / "settings.json"))
    for name in ("USE_STUB", "USE_STUB_FAILURE", "apiKey", "OPENAI_API_KEY", "LLM_MODEL"):
        monkeypatch.delenv(name, raising=False)


def at(hhmm: str, day: datetime = DAY) -> datetime:
    hour, minute = hhmm.split(":")
    return day.replace(hour=int(hour), minute=int(minute))


@pytest.fixture
def make_appointment():
    """Factory: make_appointment('a', '09:30', '10:30', patient='Ana')."""
    def _make(appointment_id, start, end, patient=None, day=DAY):
        patient = patient or f"Paciente {appointment_id}"
        return Appointment(
            id=appointment_id,
            title=patient,
            patient_name=patient,
            start=at(start, day),
            end=at(end, day),
            service_type=ServiceType.CONSULTATION,
            status=AppointmentStatus.CONFIRMED,
        )
    return _make
