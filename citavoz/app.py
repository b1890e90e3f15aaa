"""
Main entry point for the CitaVoz scheduling core.
Runs one spoken request (given as text) through capture, draft extraction,
review and conflict checking against a demo agenda.
"""

import sys
from datetime import datetime
from typing import List, Optional

from dateutil import tz as dateutil_tz

from citavoz.appointment_models import Appointment, AppointmentStatus, ServiceType
from citavoz.booking import AppointmentBook, AppointmentForm
from citavoz.capture_session import CaptureStateMachine, CaptureStatus, ScriptedSpeechProvider
from citavoz.logging_helper import Log
from citavoz import settings_manager


def demo_appointments(now: datetime) -> List[Appointment]:
    """Two appointments for today, matching the front desk demo agenda."""
    def at(hour: int, minute: int = 0) -> datetime:
        return now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    return [
        Appointment(
            id="demo-1",
            title="Carlos Mayaudon",
            patient_name="Carlos Mayaudon",
            start=at(9, 30),
            end=at(10, 30),
            service_type=ServiceType.CONSULTATION,
            notes="Primera visita",
            consultant_id="1",
            status=AppointmentStatus.CONFIRMED,
        ),
        Appointment(
            id="demo-2",
            title="Maria Rodriguez",
            patient_name="Maria Rodriguez",
            start=at(14),
            end=at(15),
            service_type=ServiceType.FOLLOW_UP,
            notes="Revisión mensual",
            consultant_id="2",
            status=AppointmentStatus.CONFIRMED,
        ),
    ]


def _interim_results(transcript: str) -> List[str]:
    # Recognizers report the full text so far, one word more each time
    words = transcript.split()
    return [" ".join(words[:count]) for count in range(1, len(words) + 1)]


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns 0 when an appointment was committed."""
    argv = sys.argv[1:] if argv is None else argv
    Log.section("CitaVoz")

    if not argv:
        Log.error("Usage: citavoz \"Crea una cita mañana a las 3pm con María Pérez por control\"")
        return 2

    transcript = " ".join(argv)
    now = datetime.now(dateutil_tz.tzlocal())
    book = AppointmentBook(demo_appointments(now))
    Log.info(f"Agenda loaded with {len(book)} appointments")

    drafts = []
    machine = CaptureStateMachine(
        ScriptedSpeechProvider(_interim_results(transcript)),
        on_draft=drafts.append,
        min_transcript_length=settings_manager.get_min_transcript_length(),
        error_display_seconds=settings_manager.get_error_display_seconds(),
    )
    machine.start()
    machine.stop()

    if machine.status is not CaptureStatus.AWAITING_REVIEW:
        Log.warn("Transcript too short - nothing to schedule")
        return 1

    machine.confirm_review(machine.session.final_transcript)
    if not drafts:
        Log.error(f"Could not process transcript ({machine.last_error})")
        return 1

    draft = drafts[0]
    form = AppointmentForm.from_draft(draft, now=now)
    if form.ambiguities:
        Log.warn(f"Please verify: {', '.join(form.ambiguities)}")

    missing = form.missing_fields()
    if missing:
        Log.warn(f"Missing required fields: {', '.join(missing)}")
        return 1

    proposal = book.propose(form.to_appointment())
    if not proposal.has_conflict:
        committed = book.commit(proposal.candidate)
        Log.info(f"Appointment saved: {committed.title} at {committed.start.strftime('%Y-%m-%d %H:%M')}")
        return 0

    Log.warn(proposal.conflict.message)
    for other in proposal.conflict.conflicting_appointments:
        Log.info(f"  {other.patient_name} {other.start.strftime('%H:%M')} - {other.end.strftime('%H:%M')}")
    if proposal.alternatives:
        Log.info("Suggested times: " + ", ".join(slot.strftime("%H:%M") for slot in proposal.alternatives))
    else:
        Log.info("No free slots left on that day")
    return 1


if __name__ == "__main__":
    sys.exit(main())
