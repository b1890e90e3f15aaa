"""
Appointment review form and the in-memory appointment book.

The form is seeded from a draft (voice) or empty (manual entry). Its
appointment is proposed to the book, which checks it for conflicts and, on
conflict, suggests alternative start times. The operator then picks an
alternative, ignores the conflict or cancels; only the commit step adds to
the book.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from dateutil import parser as dateutil_parser
from dateutil import tz as dateutil_tz

from citavoz.appointment_models import (
    Appointment,
    AppointmentStatus,
    ConflictInfo,
    ParsedAppointmentDraft,
    ServiceType,
    end_after,
)
from citavoz.conflict_detection import detect_conflicts, get_all_conflicts
from citavoz import settings_manager
from citavoz.logging_helper import Log
from citavoz.slot_finder import appointments_on_day, find_available_slots

DEFAULT_TIME = "09:00"
DEFAULT_DURATION_MINUTES = 30
REQUIRED_FORM_FIELDS = ("patient", "date", "time")


class AppointmentValidationError(ValueError):
    """Raised when the form lacks required fields or holds unparseable ones."""

    def __init__(self, fields: List[str]):
        super().__init__(f"Missing or invalid fields: {', '.join(fields)}")
        self.fields = fields


@dataclass
class AppointmentForm:
    """Editable appointment form state shown to the operator."""
    patient_name: str = ""
    date_str: str = ""
    time_str: str = DEFAULT_TIME
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    consultant_id: str = ""
    service_type: Optional[ServiceType] = None
    notes: str = ""
    ambiguities: Tuple[str, ...] = ()
    from_voice: bool = False

    @classmethod
    def manual(cls, now: Optional[datetime] = None) -> "AppointmentForm":
        now = now or datetime.now(dateutil_tz.tzlocal())
        return cls(
            date_str=now.date().isoformat(),
            duration_minutes=settings_manager.get_default_duration_minutes(),
        )

    @classmethod
    def from_draft(cls, draft: ParsedAppointmentDraft, now: Optional[datetime] = None) -> "AppointmentForm":
        now = now or datetime.now(dateutil_tz.tzlocal())
        return cls(
            patient_name=draft.patient_name or "",
            date_str=draft.date_str or now.date().isoformat(),
            time_str=draft.time_str or DEFAULT_TIME,
            duration_minutes=draft.duration_minutes or settings_manager.get_default_duration_minutes(),
            consultant_id=draft.consultant_id or "",
            notes=draft.reason or "",
            ambiguities=draft.ambiguities,
            from_voice=True,
        )

    def is_field_ambiguous(self, field_name: str) -> bool:
        needle = field_name.lower()
        return any(needle in tag.lower() for tag in self.ambiguities)

    def missing_fields(self) -> List[str]:
        values = {"patient": self.patient_name, "date": self.date_str, "time": self.time_str}
        return [name for name in REQUIRED_FORM_FIELDS if not (values[name] or "").strip()]

    def start_datetime(self, tz: Optional[tzinfo] = None) -> datetime:
        try:
            start = dateutil_parser.parse(f"{self.date_str.strip()} {self.time_str.strip()}", yearfirst=True)
        except (ValueError, OverflowError):
            raise AppointmentValidationError(["date", "time"]) from None
        if start.tzinfo is None and tz is not None:
            start = start.replace(tzinfo=tz)
        return start

    def to_appointment(
        self,
        tz: Optional[tzinfo] = dateutil_tz.tzlocal(),
        appointment_id: Optional[str] = None,
    ) -> Appointment:
        """
        Build the candidate appointment for this form.

        Raises:
            AppointmentValidationError: required fields missing, date/time
                unparseable or duration not positive
        """
        missing = self.missing_fields()
        if missing:
            raise AppointmentValidationError(missing)
        if self.duration_minutes <= 0:
            raise AppointmentValidationError(["duration"])

        start = self.start_datetime(tz)
        label = self.service_type.label if self.service_type else "Cita"
        patient = self.patient_name.strip()
        return Appointment(
            id=appointment_id or uuid.uuid4().hex,
            title=f"{label} con {patient}",
            patient_name=patient,
            start=start,
            end=end_after(start, self.duration_minutes),
            service_type=self.service_type or ServiceType.CONSULTATION,
            notes=self.notes or None,
            consultant_id=self.consultant_id or None,
            status=AppointmentStatus.PENDING if self.from_voice else AppointmentStatus.CONFIRMED,
        )


class Resolution(str, Enum):
    PICK_ALTERNATIVE = "pick_alternative"
    IGNORE = "ignore"
    CANCEL = "cancel"


@dataclass(frozen=True)
class BookingProposal:
    candidate: Appointment
    conflict: Optional[ConflictInfo] = None
    alternatives: Tuple[datetime, ...] = field(default_factory=tuple)

    @property
    def has_conflict(self) -> bool:
        return self.conflict is not None


class AppointmentBook:
    """
    Committed appointments for the lifetime of the process.
    Only commit() appends; every check runs on a snapshot.
    """

    def __init__(
        self,
        appointments: Iterable[Appointment] = (),
        work_start_hour: Optional[int] = None,
        work_end_hour: Optional[int] = None,
        max_suggested_slots: Optional[int] = None,
    ):
        self._appointments: List[Appointment] = []
        if work_start_hour is None or work_end_hour is None:
            configured_start, configured_end = settings_manager.get_work_hours()
            work_start_hour = configured_start if work_start_hour is None else work_start_hour
            work_end_hour = configured_end if work_end_hour is None else work_end_hour
        self.work_start_hour = work_start_hour
        self.work_end_hour = work_end_hour
        self.max_suggested_slots = (
            max_suggested_slots if max_suggested_slots is not None
            else settings_manager.get_max_suggested_slots()
        )
        for appointment in appointments:
            self.commit(appointment)

    def snapshot(self) -> Tuple[Appointment, ...]:
        return tuple(self._appointments)

    def __len__(self) -> int:
        return len(self._appointments)

    def appointments_on(self, day: datetime) -> List[Appointment]:
        return appointments_on_day(day, self._appointments)

    def conflicts(self) -> List[ConflictInfo]:
        return get_all_conflicts(self.snapshot())

    def propose(self, candidate: Appointment) -> BookingProposal:
        """Check a candidate against the book and suggest alternatives on conflict."""
        Log.section("Booking")
        pool = self.snapshot()
        conflict = detect_conflicts(candidate, pool)

        if conflict is None:
            Log.info(f"No conflicts for {candidate.title} at {candidate.start.isoformat()}")
            Log.kv({"stage": "booking", "result": "clear", "appointment": candidate.id})
            return BookingProposal(candidate=candidate)

        Log.warn(conflict.message)
        alternatives = find_available_slots(
            candidate.start,
            [appt for appt in pool if appt.id != candidate.id],
            candidate.duration_minutes(),
            work_start_hour=self.work_start_hour,
            work_end_hour=self.work_end_hour,
            max_slots=self.max_suggested_slots,
        )
        Log.kv({
            "stage": "booking",
            "result": "conflict",
            "severity": conflict.severity.value,
            "appointment": candidate.id,
            "alternatives": len(alternatives),
        })
        return BookingProposal(candidate=candidate, conflict=conflict, alternatives=tuple(alternatives))

    def resolve(
        self,
        proposal: BookingProposal,
        resolution: Resolution,
        slot: Optional[datetime] = None,
    ) -> Optional[Appointment]:
        """
        Apply the operator's decision on a proposal.

        Returns:
            The committed appointment, or None when cancelled

        Raises:
            ValueError: PICK_ALTERNATIVE without one of the proposal's slots
        """
        if resolution is Resolution.CANCEL:
            Log.info(f"Booking of {proposal.candidate.id} cancelled by operator")
            Log.kv({"stage": "booking", "result": "cancelled", "appointment": proposal.candidate.id})
            return None

        if resolution is Resolution.PICK_ALTERNATIVE:
            if slot is None or slot not in proposal.alternatives:
                raise ValueError(f"Slot {slot} is not one of the suggested alternatives")
            return self.commit(proposal.candidate.rescheduled(slot))

        if proposal.has_conflict:
            Log.warn(f"Committing {proposal.candidate.id} despite conflict: {proposal.conflict.message}")
        return self.commit(proposal.candidate)

    def commit(self, appointment: Appointment) -> Appointment:
        """Add an appointment to the book."""
        if any(existing.id == appointment.id for existing in self._appointments):
            raise ValueError(f"Appointment {appointment.id} is already committed")
        self._appointments.append(appointment)
        Log.kv({
            "stage": "booking",
            "result": "committed",
            "appointment": appointment.id,
            "patient": appointment.patient_name,
            "start": appointment.start.isoformat(),
            "end": appointment.end.isoformat(),
            "status": appointment.status.value,
        })
        return appointment
