"""
Conflict detection for appointments.
Reports which appointments in a pool overlap a candidate and how severe the
overlap is. Pure functions: nothing here mutates the pool.
"""

from typing import Iterable, List, Optional, Sequence

from citavoz.appointment_models import Appointment, ConflictInfo, Severity
from citavoz.logging_helper import Log

EXACT_CONFLICT_MESSAGE = "Conflicto exacto con cita(s) de: {names}"
PARTIAL_CONFLICT_MESSAGE = "Solapamiento parcial con cita(s) de: {names}"


def detect_conflicts(candidate: Appointment, pool: Iterable[Appointment]) -> Optional[ConflictInfo]:
    """
    Check a candidate appointment against a pool of appointments.

    The candidate is excluded from the pool by id, so checking an appointment
    that is already in the pool never reports it against itself.

    Args:
        candidate: Appointment to check
        pool: Existing appointments, in display order

    Returns:
        ConflictInfo listing the overlapping appointments in pool order,
        or None if nothing overlaps
    """
    candidate_slot = candidate.slot
    conflicting = tuple(
        other for other in pool
        if other.id != candidate.id and candidate_slot.overlaps(other.slot)
    )

    if not conflicting:
        return None

    # Only an identical start instant counts as an exact double booking
    exact = any(other.start == candidate.start for other in conflicting)
    severity = Severity.ERROR if exact else Severity.WARNING

    names = ", ".join(other.patient_name for other in conflicting)
    template = EXACT_CONFLICT_MESSAGE if exact else PARTIAL_CONFLICT_MESSAGE

    return ConflictInfo(
        appointment=candidate,
        conflicting_appointments=conflicting,
        severity=severity,
        message=template.format(names=names),
    )


def get_all_conflicts(pool: Sequence[Appointment]) -> List[ConflictInfo]:
    """
    Run detect_conflicts for every appointment in the pool.

    The report is per subject, not per pair: when A overlaps B, one entry is
    emitted for A and another one for B. Subjects sharing an id are reported
    once.
    """
    conflicts: List[ConflictInfo] = []
    reported_ids = set()

    for appointment in pool:
        if appointment.id in reported_ids:
            continue
        conflict = detect_conflicts(appointment, pool)
        if conflict is not None:
            conflicts.append(conflict)
            reported_ids.add(appointment.id)

    Log.kv({
        "stage": "conflicts",
        "pool_size": len(pool),
        "subjects_in_conflict": len(conflicts),
        "errors": sum(1 for c in conflicts if c.severity is Severity.ERROR),
    })
    return conflicts
