"""
Appointment data models for the scheduling core.
Defines TimeSlot, Appointment, ConflictInfo, Consultant and the
ParsedAppointmentDraft produced from a transcript.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple


class ServiceType(str, Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow_up"
    URGENT = "urgent"
    OTHER = "other"

    @property
    def label(self) -> str:
        """Spanish label used in appointment titles."""
        return _SERVICE_LABELS[self]


_SERVICE_LABELS = {
    ServiceType.CONSULTATION: "Consulta",
    ServiceType.FOLLOW_UP: "Control",
    ServiceType.URGENT: "Urgencia",
    ServiceType.OTHER: "Otro",
}


class AppointmentStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


def time_slots_overlap(first: "TimeSlot", second: "TimeSlot") -> bool:
    """
    Half-open overlap test: [a.start, a.end) and [b.start, b.end).
    A slot ending exactly when the other starts does not overlap it.
    """
    return first.start < second.end and second.start < first.end


@dataclass(frozen=True)
class TimeSlot:
    """A half-open time interval [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if not self.start < self.end:
            raise ValueError(f"TimeSlot start must be before end: {self.start} >= {self.end}")

    def overlaps(self, other: "TimeSlot") -> bool:
        return time_slots_overlap(self, other)

    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass(frozen=True)
class Appointment:
    """
    A calendar appointment. Identity is the id: two appointments with the
    same id are the same entity when excluding a candidate from a pool.
    """
    id: str
    title: str
    patient_name: str
    start: datetime
    end: datetime
    service_type: ServiceType = ServiceType.CONSULTATION
    notes: Optional[str] = None
    consultant_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.CONFIRMED

    def __post_init__(self):
        if not self.start < self.end:
            raise ValueError(f"Appointment {self.id} start must be before end: {self.start} >= {self.end}")

    @property
    def slot(self) -> TimeSlot:
        return TimeSlot(self.start, self.end)

    def duration_minutes(self) -> int:
        return self.slot.duration_minutes()

    def rescheduled(self, new_start: datetime) -> "Appointment":
        """Copy of this appointment moved to new_start, keeping its duration."""
        return replace(self, start=new_start, end=new_start + (self.end - self.start))


@dataclass(frozen=True)
class ConflictInfo:
    """Derived overlap report for one subject appointment."""
    appointment: Appointment
    conflicting_appointments: Tuple[Appointment, ...]
    severity: Severity
    message: str


@dataclass(frozen=True)
class Consultant:
    id: str
    name: str


@dataclass(frozen=True)
class ParsedAppointmentDraft:
    """
    Structured appointment draft extracted from a transcript.
    Fields may be absent; ambiguities names the fields that were guessed
    rather than stated. Tags keep the order they were reported in.
    """
    patient_name: Optional[str] = None
    date_str: Optional[str] = None  # YYYY-MM-DD
    time_str: Optional[str] = None  # HH:MM, 24h
    duration_minutes: int = 30
    reason: Optional[str] = None
    consultant_name: Optional[str] = None
    consultant_id: Optional[str] = None
    ambiguities: Tuple[str, ...] = field(default_factory=tuple)

    def is_ambiguous(self, field_name: str) -> bool:
        """True when any ambiguity tag mentions field_name (case-insensitive)."""
        needle = field_name.lower()
        return any(needle in tag.lower() for tag in self.ambiguities)

    @property
    def parsing_failed(self) -> bool:
        return "parsing_failed" in self.ambiguities


def end_after(start: datetime, duration_minutes: int) -> datetime:
    return start + timedelta(minutes=duration_minutes)
