"""
Draft pipeline for turning a transcript into a ParsedAppointmentDraft.
Calls the text understanding collaborator, then validates and normalizes its
payload. Collaborator failures never escape: they become the parsing_failed
fallback draft.
"""

import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from dateutil import parser as dateutil_parser
from dateutil import tz as dateutil_tz

from citavoz.appointment_models import Consultant, ParsedAppointmentDraft
from citavoz.logging_helper import Log
from citavoz.settings_manager import get_consultants, get_default_duration_minutes
from citavoz.text_llm_client import TextLLMClient, build_request, get_llm_client

DEFAULT_DURATION_MINUTES = 30
PARSING_FAILED = "parsing_failed"
REQUIRED_FIELDS = ("durationMinutes", "ambiguities")

# HH:MM[:SS], optionally with am/pm, or a bare hour with am/pm ("3pm")
_TIME_TEXT_RE = re.compile(
    r"\d{1,2}:\d{2}(?::\d{2})?(?:\s*[ap]\.?\s?m\.?)?|\d{1,2}\s*[ap]\.?\s?m\.?",
    re.IGNORECASE,
)


class EmptyTranscriptError(ValueError):
    """Raised when extract_draft is called with a blank transcript."""


def resolve_consultant(spoken_name: Optional[str], roster: Sequence[Consultant]) -> Optional[Consultant]:
    """
    Match a spoken consultant name against the roster.

    The first roster entry whose display name contains the spoken name
    (case-insensitive) wins, so the result depends on roster order. This is a
    loose containment test, not fuzzy matching.
    """
    if not spoken_name:
        return None
    needle = spoken_name.lower()
    for consultant in roster:
        if needle in consultant.name.lower():
            return consultant
    return None


def fallback_draft(
    now: Optional[datetime] = None,
    default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
) -> ParsedAppointmentDraft:
    """Safe draft used when the collaborator call fails."""
    now = now or datetime.now(dateutil_tz.tzlocal())
    return ParsedAppointmentDraft(
        date_str=now.date().isoformat(),
        duration_minutes=default_duration_minutes,
        ambiguities=(PARSING_FAILED,),
    )


def _clean_text(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected string or null, got {type(value).__name__}")
    value = value.strip()
    return value or None


def _normalize_date(value: Optional[str], now: datetime) -> Tuple[str, bool]:
    """Return (YYYY-MM-DD, guessed). Missing dates default to today."""
    if value is None:
        return now.date().isoformat(), False
    try:
        return dateutil_parser.isoparse(value).date().isoformat(), False
    except ValueError:
        Log.warn(f"Discarding unparseable date from collaborator: '{value}'")
        return now.date().isoformat(), True


def _normalize_time(value: Optional[str]) -> Tuple[Optional[str], bool]:
    """Return (HH:MM, guessed)."""
    if value is None:
        return None, False
    if not _TIME_TEXT_RE.fullmatch(value):
        # A bare number like "7" would parse as a day of the month
        Log.warn(f"Discarding time outside HH:MM from collaborator: '{value}'")
        return None, True
    try:
        parsed = dateutil_parser.parse(value, default=datetime(2000, 1, 1))
    except (ValueError, OverflowError):
        Log.warn(f"Discarding unparseable time from collaborator: '{value}'")
        return None, True
    return parsed.strftime("%H:%M"), False


def _normalize_duration(value, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        Log.warn(f"Invalid durationMinutes '{value}', defaulting to {default}")
        return default
    return value


def _merge_tags(tags: Iterable[str]) -> Tuple[str, ...]:
    merged: List[str] = []
    for tag in tags:
        if tag not in merged:
            merged.append(tag)
    return tuple(merged)


def draft_from_payload(
    payload: dict,
    now: datetime,
    roster: Sequence[Consultant] = (),
    default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
) -> ParsedAppointmentDraft:
    """
    Validate and normalize a collaborator payload.
    An invalid durationMinutes falls back to default_duration_minutes.

    Raises:
        ValueError: payload is not an object, misses a required field, or
            has fields of the wrong type
    """
    if not isinstance(payload, dict):
        raise ValueError("Payload is not a JSON object")
    missing = [name for name in REQUIRED_FIELDS if name not in payload]
    if missing:
        raise ValueError(f"Payload missing required fields: {', '.join(missing)}")

    raw_tags = payload["ambiguities"]
    if not isinstance(raw_tags, list):
        raise ValueError("ambiguities is not an array")
    tags = [tag.strip() for tag in raw_tags if isinstance(tag, str) and tag.strip()]

    date_str, date_guessed = _normalize_date(_clean_text(payload.get("dateStr")), now)
    if date_guessed:
        tags.append("date")
    time_str, time_guessed = _normalize_time(_clean_text(payload.get("timeStr")))
    if time_guessed:
        tags.append("time")

    consultant_name = _clean_text(payload.get("consultantName"))
    consultant = resolve_consultant(consultant_name, roster)
    if consultant_name and (consultant is None or consultant.name.lower() != consultant_name.lower()):
        # Substring matches are low confidence; let the operator confirm
        tags.append("consultant")

    return ParsedAppointmentDraft(
        patient_name=_clean_text(payload.get("patientName")),
        date_str=date_str,
        time_str=time_str,
        duration_minutes=_normalize_duration(payload.get("durationMinutes"), default_duration_minutes),
        reason=_clean_text(payload.get("reason")),
        consultant_name=consultant_name,
        consultant_id=consultant.id if consultant else None,
        ambiguities=_merge_tags(tags),
    )


def extract_draft(
    transcript: str,
    client: Optional[TextLLMClient] = None,
    now: Optional[datetime] = None,
    roster: Optional[Sequence[Consultant]] = None,
) -> ParsedAppointmentDraft:
    """
    Turn a transcript into an appointment draft.

    Args:
        transcript: Operator-confirmed transcript text
        client: Text understanding client (defaults to get_llm_client())
        now: Reference timestamp for relative dates (defaults to local now)
        roster: Known consultants (defaults to the configured roster)

    Returns:
        ParsedAppointmentDraft; on any collaborator failure the fallback
        draft with the parsing_failed tag

    Raises:
        EmptyTranscriptError: transcript is blank
    """
    Log.section("Draft Pipeline")

    if transcript is None or not transcript.strip():
        Log.warn("Empty transcript - nothing to extract")
        Log.kv({"stage": "draft", "result": "failed", "reason": "empty_transcript"})
        raise EmptyTranscriptError("Empty transcript")

    now = now or datetime.now(dateutil_tz.tzlocal())
    if roster is None:
        roster = get_consultants()
    client = client or get_llm_client()
    default_duration = get_default_duration_minutes()

    Log.info(f"Extracting draft from transcript: '{transcript}'")

    try:
        payload = client.extract_fields(build_request(transcript, now))
        if payload is None:
            raise ValueError("Collaborator returned no payload")
        draft = draft_from_payload(payload, now, roster, default_duration)
    except Exception as e:
        # Any collaborator failure ends in the fallback draft
        Log.error(f"Draft extraction failed: {e}")
        Log.kv({"stage": "draft", "result": "fallback", "reason": PARSING_FAILED, "error": str(e)})
        return fallback_draft(now, default_duration)

    Log.kv({
        "stage": "draft",
        "result": "success",
        "patient": draft.patient_name,
        "date": draft.date_str,
        "time": draft.time_str,
        "duration_min": draft.duration_minutes,
        "consultant_id": draft.consultant_id,
        "ambiguities": ",".join(draft.ambiguities) or "none",
    })
    return draft
