"""
Text LLM Client interface for extracting appointment fields from transcripts.
Supports StubTextLLMClient (offline, rule-based) and OpenAITextLLMClient
(real provider).

Every client takes a request {transcript, referenceTimestamp} and returns the
raw response payload as a dict, or None when the call failed. Validation and
defaulting of the payload happen in the draft pipeline.
"""

import json
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import requests
from dateutil import parser as dateutil_parser
from dateutil.relativedelta import relativedelta, MO, TU, WE, TH, FR, SA, SU

from citavoz.logging_helper import Log

DEFAULT_MODEL = "gpt-4o-mini"
REQUEST_TIMEOUT_SECONDS = 30

SYSTEM_PROMPT = (
    "You are an expert medical receptionist. Extract structured appointment data from a Spanish "
    "voice transcript.\n"
    "The current date and time reference is: {reference}.\n"
    "Use this reference to resolve terms like \"mañana\" (tomorrow), \"el viernes\" (this coming Friday), "
    "\"pasado mañana\" (day after tomorrow).\n\n"
    "Rules:\n"
    "1. Identify 'patientName', 'dateStr' (YYYY-MM-DD), 'timeStr' (HH:mm 24h format), "
    "'durationMinutes', 'reason' and 'consultantName'.\n"
    "2. If duration is not mentioned, default to 30.\n"
    "3. If the hour is stated without am/pm (e.g. \"a las 7\"), prefer the 07:00 to 19:00 window "
    "unless context implies evening.\n"
    "4. If the weekday is today's weekday, assume next week unless \"hoy\" is said.\n"
    "5. If no date is provided, default to the current date.\n"
    "6. Return in 'ambiguities' one tag per field you had to guess (e.g. \"time\", \"date\", \"patient\").\n\n"
    "Return only a JSON object with keys patientName, dateStr, timeStr, durationMinutes, reason, "
    "consultantName (use null when not found) and ambiguities (array of strings)."
)


def build_request(transcript: str, reference: datetime) -> dict:
    """Request payload sent to every collaborator."""
    return {"transcript": transcript, "referenceTimestamp": reference.isoformat()}


class TextLLMClient(ABC):
    """Abstract base class for text understanding clients."""

    @abstractmethod
    def extract_fields(self, request: dict) -> Optional[dict]:
        """
        Extract appointment fields from a transcript.

        Args:
            request: Dict with transcript and referenceTimestamp (ISO-8601)

        Returns:
            Response payload dict, or None if the call failed
        """


# ---------------------------------------------------------------------------
# Offline rule-based client
# ---------------------------------------------------------------------------

_WEEKDAYS = {
    "lunes": MO, "martes": TU, "miercoles": WE, "miércoles": WE,
    "jueves": TH, "viernes": FR, "sabado": SA, "sábado": SA, "domingo": SU,
}

_NUMBER_WORDS = {
    "una": 1, "uno": 1, "dos": 2, "tres": 3, "cuatro": 4, "cinco": 5, "seis": 6,
    "siete": 7, "ocho": 8, "nueve": 9, "diez": 10, "once": 11, "doce": 12,
}

_CONSULTANT_TITLES = {"dr", "dr.", "dra", "dra.", "doctor", "doctora"}
_NAME_STOP_WORDS = {"de", "del", "la", "el", "y", "por", "para", "a", "con", "en"}

_TIME_RE = re.compile(
    r"\ba\s+las?\s+(?P<hour>\d{1,2}|" + "|".join(_NUMBER_WORDS) + r")"
    r"(?:\s*(?::|\.|h)\s*(?P<minute>\d{2}))?"
    r"(?P<half>\s+y\s+media)?"
    r"(?:\s*(?P<meridiem>a\.?\s?m\.?|p\.?\s?m\.?)(?!\w))?"
    r"(?:\s+(?:de|por)\s+la\s+(?P<period>mañana|tarde|noche))?",
    re.IGNORECASE,
)
_ISO_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_DAY_MONTH_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{4}))?\b")
_DURATION_RE = re.compile(r"\b(\d+)\s*(minutos|min|horas?)\b", re.IGNORECASE)
_REASON_RE = re.compile(r"\bpor\s+(?!la\s+(?:mañana|tarde|noche))(?P<reason>.+)", re.IGNORECASE)
_REASON_STOP_RE = re.compile(
    r"\s+(?:con|para|a\s+las?|mañana|pasado|hoy|durante|el\s+(?:" + "|".join(_WEEKDAYS) + r"))\b|[.,;]",
    re.IGNORECASE,
)


def _strip_token(token: str) -> str:
    return token.strip(".,;:!?¡¿\"'()")


def _capitalized_run(tokens: List[str]) -> Optional[str]:
    """Leading run of capitalized words, e.g. ['María', 'Pérez', 'por'] -> 'María Pérez'."""
    words = []
    for raw in tokens[:4]:
        word = _strip_token(raw)
        if not word or not word[0].isupper() or not word.replace("-", "").isalpha():
            break
        if word.lower() in _NAME_STOP_WORDS:
            break
        words.append(word)
        if raw.endswith((",", ".", ";")):
            break
    return " ".join(words) if words else None


def _extract_people(transcript: str) -> Tuple[Optional[str], Optional[str]]:
    """Return (patient_name, consultant_name) from 'con'/'para' phrases."""
    tokens = transcript.split()
    patient = None
    consultant = None
    for index, token in enumerate(tokens):
        if token.lower() not in ("con", "para"):
            continue
        rest = tokens[index + 1:]
        if rest and rest[0].lower() in ("el", "la"):
            rest = rest[1:]
        if rest and _strip_token(rest[0]).lower() in _CONSULTANT_TITLES:
            name = _capitalized_run(rest[1:])
            if name and consultant is None:
                consultant = name
            continue
        name = _capitalized_run(rest)
        if name and patient is None:
            patient = name
    return patient, consultant


def _extract_date(text: str, reference: datetime) -> Tuple[str, bool]:
    """Return (YYYY-MM-DD, guessed)."""
    lowered = text.lower()
    # "de la mañana" means morning, not tomorrow
    lowered = re.sub(r"(de|por)\s+la\s+mañana", " ", lowered)
    today = reference.date()

    iso = _ISO_DATE_RE.search(lowered)
    if iso:
        try:
            return dateutil_parser.isoparse(iso.group(1)).date().isoformat(), False
        except ValueError:
            pass

    day_month = _DAY_MONTH_RE.search(lowered)
    if day_month:
        day, month, year = day_month.groups()
        try:
            parsed = today.replace(year=int(year) if year else today.year, month=int(month), day=int(day))
            return parsed.isoformat(), False
        except ValueError:
            pass

    if "pasado mañana" in lowered:
        return (today + timedelta(days=2)).isoformat(), False
    if re.search(r"\bmañana\b", lowered):
        return (today + timedelta(days=1)).isoformat(), False
    if re.search(r"\bhoy\b", lowered):
        return today.isoformat(), False

    for word, weekday in _WEEKDAYS.items():
        if re.search(rf"\b{word}\b", lowered):
            # Next occurrence strictly after today
            target = today + relativedelta(days=+1, weekday=weekday(+1))
            return target.isoformat(), False

    return today.isoformat(), True


def _extract_time(text: str) -> Tuple[Optional[str], bool]:
    """Return (HH:MM, guessed)."""
    match = _TIME_RE.search(text)
    if not match:
        return None, False

    raw_hour = match.group("hour").lower()
    hour = int(raw_hour) if raw_hour.isdigit() else _NUMBER_WORDS[raw_hour]
    minute = int(match.group("minute") or 0)
    if match.group("half"):
        minute = 30
    if hour > 23 or minute > 59:
        return None, True

    meridiem = (match.group("meridiem") or "").lower().replace(".", "").replace(" ", "")
    period = (match.group("period") or "").lower()
    guessed = False

    if meridiem == "pm" or period in ("tarde", "noche"):
        if hour < 12:
            hour += 12
    elif meridiem == "am" or period == "mañana":
        if hour == 12:
            hour = 0
    elif 1 <= hour <= 12:
        # No am/pm: prefer the 07:00-19:00 window
        if hour < 7:
            hour += 12
        guessed = True

    return f"{hour:02d}:{minute:02d}", guessed


def _extract_duration(text: str) -> int:
    lowered = text.lower()
    match = _DURATION_RE.search(lowered)
    if match:
        amount = int(match.group(1))
        if match.group(2).startswith("hora"):
            return amount * 60
        return amount
    if "media hora" in lowered:
        return 30
    if re.search(r"\buna\s+hora\b", lowered):
        return 60
    return 30


def _extract_reason(text: str) -> Optional[str]:
    match = _REASON_RE.search(text)
    if not match:
        return None
    reason = _REASON_STOP_RE.split(match.group("reason"), maxsplit=1)[0].strip()
    return reason or None


class StubTextLLMClient(TextLLMClient):
    """
    Offline client for running without network access.
    Applies simple Spanish rules and follows the same response contract as
    the real provider, including the ambiguity tags.
    """

    def extract_fields(self, request: dict) -> Optional[dict]:
        Log.section("Stub LLM Client")
        Log.info("Using stub LLM client (offline mode)")

        try:
            transcript = request["transcript"]
            reference = dateutil_parser.isoparse(request["referenceTimestamp"])

            ambiguities = []
            date_str, date_guessed = _extract_date(transcript, reference)
            if date_guessed:
                ambiguities.append("date")
            time_str, time_guessed = _extract_time(transcript)
            if time_guessed:
                ambiguities.append("time")
            patient_name, consultant_name = _extract_people(transcript)

            payload = {
                "patientName": patient_name,
                "dateStr": date_str,
                "timeStr": time_str,
                "durationMinutes": _extract_duration(transcript),
                "reason": _extract_reason(transcript),
                "consultantName": consultant_name,
                "ambiguities": ambiguities,
            }
        except (KeyError, TypeError, ValueError) as e:
            Log.error(f"Unexpected error in StubTextLLMClient: {e}")
            Log.kv({"stage": "llm", "provider": "stub", "result": "failed", "reason": "bad_request", "error": str(e)})
            return None

        Log.kv({
            "stage": "llm",
            "provider": "stub",
            "result": "success",
            "patient": payload["patientName"],
            "date": payload["dateStr"],
            "time": payload["timeStr"],
            "ambiguities": ",".join(ambiguities) or "none",
        })
        return payload


class StubTextLLMClient_ServiceDown(TextLLMClient):
    """
    Stub client that simulates an unreachable text understanding service.
    Always returns None, like the OpenAI client does on network errors.
    """

    def extract_fields(self, request: dict) -> Optional[dict]:
        Log.section("Stub LLM Client - Service Down")
        Log.info("Simulating: text understanding service unavailable")
        Log.kv({"stage": "llm", "provider": "stub_service_down", "result": "failed", "reason": "api_error"})
        return None


# ---------------------------------------------------------------------------
# OpenAI client
# ---------------------------------------------------------------------------

def _parse_json_content(content: str) -> Optional[dict]:
    """Parse a JSON object from model output, tolerating markdown code fences."""
    content = content.strip()
    if content.startswith('```'):
        lines = content.split('\n')
        content = '\n'.join(lines[1:-1]) if len(lines) > 2 else content

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        json_match = re.search(r'\{.*\}', content, re.DOTALL)
        if not json_match:
            return None
        try:
            data = json.loads(json_match.group())
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


class OpenAITextLLMClient(TextLLMClient):
    """
    OpenAI Chat Completions client for real field extraction.
    Uses JSON mode so the reply is a single object.
    """

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        """
        Initialize OpenAI client.

        Args:
            api_key: OpenAI API key from environment
            model: Chat model name
        """
        self.api_key = api_key
        self.api_url = "https://api.openai.com/v1/chat/completions"
        self.model = model

    def extract_fields(self, request: dict) -> Optional[dict]:
        Log.section("OpenAI LLM Client")
        Log.info(f"Using OpenAI Chat API ({self.model})")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT.format(reference=request["referenceTimestamp"])},
                {"role": "user", "content": request["transcript"]},
            ],
            "response_format": {"type": "json_object"},
            "max_tokens": 300,
            "temperature": 0.1
        }

        try:
            Log.info("Calling OpenAI Chat API...")
            Log.kv({
                "stage": "llm",
                "provider": "openai",
                "model": self.model,
                "status": "requesting",
                "transcript_length": len(request["transcript"]),
            })

            response = requests.post(
                self.api_url,
                headers=headers,
                json=payload,
                timeout=REQUEST_TIMEOUT_SECONDS
            )
            Log.info(f"API response status: {response.status_code}")
            if response.status_code != 200:
                Log.error(f"OpenAI API error: {response.text[:500]}")
            response.raise_for_status()

            result = response.json()
            content = result.get('choices', [{}])[0].get('message', {}).get('content', '')
            if not content:
                Log.warn("Empty response from OpenAI")
                Log.kv({"stage": "llm", "provider": "openai", "result": "failed", "reason": "empty_response"})
                return None

            fields = _parse_json_content(content)
            if fields is None:
                Log.warn(f"Could not parse JSON from response: {content[:100]}")
                Log.kv({"stage": "llm", "provider": "openai", "result": "failed", "reason": "json_parse_error"})
                return None

            Log.kv({
                "stage": "llm",
                "provider": "openai",
                "result": "success",
                "patient": fields.get("patientName"),
                "date": fields.get("dateStr"),
                "time": fields.get("timeStr"),
            })
            return fields

        except requests.exceptions.RequestException as e:
            Log.error(f"OpenAI API request failed: {e}")
            Log.kv({"stage": "llm", "provider": "openai", "result": "failed", "reason": "api_error", "error": str(e)})
            return None

        except (ValueError, KeyError, IndexError, AttributeError) as e:
            Log.error(f"Unexpected response from OpenAI: {e}")
            Log.kv({"stage": "llm", "provider": "openai", "result": "failed", "reason": "unexpected_error", "error": str(e)})
            return None


def get_llm_client() -> TextLLMClient:
    """
    Factory function to get the appropriate text LLM client.
    Uses OpenAITextLLMClient if an API key is available, else StubTextLLMClient.

    Can be forced to use the stub by setting USE_STUB.
    Can be forced to simulate an outage by setting USE_STUB_FAILURE.

    Returns:
        TextLLMClient instance
    """
    if os.getenv("USE_STUB_FAILURE"):
        Log.info("USE_STUB_FAILURE flag set - using stub client (service down)")
        return StubTextLLMClient_ServiceDown()

    if os.getenv("USE_STUB"):
        Log.info("USE_STUB flag set - using stub client")
        return StubTextLLMClient()

    api_key = os.getenv("apiKey") or os.getenv("OPENAI_API_KEY")
    if api_key:
        Log.info("API key found - using OpenAI client")
        return OpenAITextLLMClient(api_key, model=os.getenv("LLM_MODEL", DEFAULT_MODEL))

    Log.info("No API key - using stub client")
    return StubTextLLMClient()
