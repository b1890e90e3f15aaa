"""
Voice capture lifecycle.

One CaptureSession exists per user-initiated capture. The CaptureStateMachine
owns it and moves it through

    Idle -> Listening -> AwaitingReview -> Processing -> Idle
    Listening -> Idle (transcript too short, or cancelled)
    AwaitingReview -> Idle (cancelled)
    Processing -> Error -> Idle (after a display delay)

Speech providers push events (TranscriptUpdate, CaptureEnded, CaptureFailed)
through dispatch(); operator actions are start(), stop(), confirm_review()
and cancel().
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

from citavoz.appointment_models import ParsedAppointmentDraft
from citavoz.draft_pipeline import extract_draft
from citavoz.logging_helper import Log

DEFAULT_MIN_TRANSCRIPT_LENGTH = 3
DEFAULT_ERROR_DISPLAY_SECONDS = 3.0


class CaptureStatus(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    AWAITING_REVIEW = "awaiting_review"
    PROCESSING = "processing"
    ERROR = "error"


class CaptureInProgressError(RuntimeError):
    """Raised when a capture is started while another one is live."""


class TranscriptUpdate:
    """Latest full-so-far interim transcript. Replaces, never appends."""

    __slots__ = ("text",)

    def __init__(self, text: str):
        self.text = text


class CaptureEnded:
    """Terminal signal from the provider (silence timeout or stop)."""

    __slots__ = ()


class CaptureFailed:
    """The provider could not capture audio."""

    __slots__ = ("reason",)

    def __init__(self, reason: str):
        self.reason = reason


CaptureEvent = Union[TranscriptUpdate, CaptureEnded, CaptureFailed]
CaptureListener = Callable[[CaptureEvent], None]


class SpeechCaptureProvider(ABC):
    """Abstract speech-to-text provider delivering transcript events."""

    @abstractmethod
    def start(self, listener: CaptureListener) -> None:
        """Begin capturing; push events to listener."""

    @abstractmethod
    def stop(self) -> None:
        """Stop capturing; may still deliver a final update."""

    @abstractmethod
    def abort(self) -> None:
        """Stop capturing and drop anything pending."""


class ScriptedSpeechProvider(SpeechCaptureProvider):
    """
    Offline provider that replays a fixed list of interim transcripts.
    Each entry is the full text recognized so far, like a browser
    recognizer with interim results enabled.
    """

    def __init__(self, interim_results: Sequence[str], end_after_script: bool = False):
        self.interim_results = list(interim_results)
        self.end_after_script = end_after_script
        self.listener: Optional[CaptureListener] = None
        self.active = False

    def start(self, listener: CaptureListener) -> None:
        self.listener = listener
        self.active = True
        for text in self.interim_results:
            if not self.active:
                return
            listener(TranscriptUpdate(text))
        if self.end_after_script and self.active:
            listener(CaptureEnded())

    def stop(self) -> None:
        self.active = False

    def abort(self) -> None:
        self.active = False
        self.listener = None


@dataclass
class CaptureSession:
    session_id: str
    status: CaptureStatus = CaptureStatus.LISTENING
    live_transcript: str = ""
    final_transcript: Optional[str] = None


class CaptureStateMachine:
    """
    Governs one voice capture attempt at a time.

    Args:
        provider: Speech provider, or None when capture is unsupported
        on_draft: Called with the draft once extraction succeeds
        extractor: Transcript -> draft function (default extract_draft)
        min_transcript_length: Transcripts this short are discarded on stop
        error_display_seconds: How long the Error status stays visible
        timer_factory: threading.Timer compatible factory for the error reset
    """

    def __init__(
        self,
        provider: Optional[SpeechCaptureProvider],
        on_draft: Callable[[ParsedAppointmentDraft], None],
        extractor: Callable[[str], ParsedAppointmentDraft] = extract_draft,
        min_transcript_length: int = DEFAULT_MIN_TRANSCRIPT_LENGTH,
        error_display_seconds: float = DEFAULT_ERROR_DISPLAY_SECONDS,
        timer_factory=threading.Timer,
    ):
        self.provider = provider
        self.on_draft = on_draft
        self.extractor = extractor
        self.min_transcript_length = min_transcript_length
        self.error_display_seconds = error_display_seconds
        self.timer_factory = timer_factory

        self.session: Optional[CaptureSession] = None
        self.last_error: Optional[str] = None
        self._error_status = False
        self._error_timer = None
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.RLock()
        self._status_listeners: List[Callable[[CaptureStatus], None]] = []

    # -- status --------------------------------------------------------------

    @property
    def status(self) -> CaptureStatus:
        with self._lock:
            if self._error_status:
                return CaptureStatus.ERROR
            if self.session is None:
                return CaptureStatus.IDLE
            return self.session.status

    @property
    def live_transcript(self) -> str:
        with self._lock:
            return self.session.live_transcript if self.session else ""

    def add_status_listener(self, listener: Callable[[CaptureStatus], None]) -> None:
        self._status_listeners.append(listener)

    def _notify(self) -> None:
        status = self.status
        Log.kv({"stage": "capture", "status": status.value})
        for listener in self._status_listeners:
            listener(status)

    def _set_status(self, status: CaptureStatus) -> None:
        if self.session is not None:
            self.session.status = status
        self._notify()

    def _end_session(self) -> None:
        self.session = None
        self._notify()

    # -- operator actions ----------------------------------------------------

    def start(self) -> Optional[CaptureSession]:
        """
        Open a new session and start listening.

        Returns None when no speech provider is available or it fails to
        start; the machine then shows the Error status until the display
        delay elapses.
        """
        with self._lock:
            if self.session is not None:
                raise CaptureInProgressError(
                    f"Capture {self.session.session_id} is still {self.session.status.value}"
                )
            self._clear_error_state()

            Log.section("Voice Capture")
            if self.provider is None:
                Log.warn("Speech capture not supported - no provider available")
                self._enter_error("capture_unsupported")
                return None

            self.session = CaptureSession(session_id=uuid.uuid4().hex)
            session = self.session
            Log.info(f"Capture session {session.session_id} listening")
            self._notify()

        try:
            self.provider.start(self._listener_for(session.session_id))
        except Exception as e:
            Log.error(f"Speech provider failed to start: {e}")
            self.dispatch(CaptureFailed(str(e)), session_id=session.session_id)
            return None
        return session

    def stop(self) -> None:
        """Operator stop: freeze the transcript for review, or drop it if too short."""
        with self._lock:
            if self.session is None or self.session.status is not CaptureStatus.LISTENING:
                Log.warn(f"Stop ignored while {self.status.value}")
                return
            if self.provider is not None:
                self.provider.stop()
            # The provider may have ended or failed the session from inside stop()
            if self.session is None or self.session.status is not CaptureStatus.LISTENING:
                return
            self._freeze_transcript()

    def confirm_review(self, transcript: str, run_in_background: bool = False) -> None:
        """
        Operator confirmed the (possibly edited) transcript; extract the draft.

        With run_in_background the extraction runs in a daemon thread and the
        result is dropped if the session was cancelled in the meantime.
        """
        with self._lock:
            if self.session is None or self.session.status is not CaptureStatus.AWAITING_REVIEW:
                Log.warn(f"Confirm ignored while {self.status.value}")
                return
            session = self.session
            session.final_transcript = transcript
            self._set_status(CaptureStatus.PROCESSING)

        if run_in_background:
            self._worker = threading.Thread(
                target=self._process,
                args=(session.session_id, transcript),
                daemon=True,
                name="CitaVozDraftProcessor",
            )
            self._worker.start()
        else:
            self._process(session.session_id, transcript)

    def cancel(self) -> None:
        """Abort whatever is in progress and return to Idle."""
        with self._lock:
            if self.session is None:
                if self._error_status:
                    self._clear_error_state()
                    self._notify()
                return
            Log.info(f"Capture session {self.session.session_id} cancelled while {self.session.status.value}")
            if self.session.status is CaptureStatus.LISTENING and self.provider is not None:
                self.provider.abort()
            self._end_session()

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until a background extraction finishes."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)

    # -- provider events -----------------------------------------------------

    def _listener_for(self, session_id: str) -> CaptureListener:
        return lambda event: self.dispatch(event, session_id=session_id)

    def dispatch(self, event: CaptureEvent, session_id: Optional[str] = None) -> None:
        """Handle an event from the speech provider. Stale events are dropped."""
        with self._lock:
            session = self.session
            if session is None or (session_id is not None and session_id != session.session_id):
                return
            if session.status is not CaptureStatus.LISTENING:
                return

            if isinstance(event, TranscriptUpdate):
                session.live_transcript = event.text
            elif isinstance(event, CaptureEnded):
                self._freeze_transcript()
            elif isinstance(event, CaptureFailed):
                Log.error(f"Speech capture error: {event.reason}")
                if self.provider is not None:
                    self.provider.abort()
                self.session = None
                self._enter_error(event.reason)
            else:
                Log.warn(f"Unknown capture event: {event!r}")

    # -- internals -----------------------------------------------------------

    def _freeze_transcript(self) -> None:
        session = self.session
        if session is None:
            return
        text = session.live_transcript
        if len(text.strip()) > self.min_transcript_length:
            session.final_transcript = text
            Log.info(f"Transcript ready for review: '{text}'")
            self._set_status(CaptureStatus.AWAITING_REVIEW)
        else:
            Log.info("Transcript too short - discarding capture")
            Log.kv({"stage": "capture", "result": "too_short", "length": len(text.strip())})
            self._end_session()

    def _process(self, session_id: str, transcript: str) -> None:
        try:
            draft = self.extractor(transcript)
            with self._lock:
                if self.session is None or self.session.session_id != session_id:
                    Log.info("Discarding draft of a cancelled capture")
                    return
            self.on_draft(draft)
        except Exception as e:
            Log.error(f"Draft processing failed: {e}")
            with self._lock:
                if self.session is None or self.session.session_id != session_id:
                    return
                self.session = None
                self._enter_error(str(e))
            return

        with self._lock:
            if self.session is not None and self.session.session_id == session_id:
                Log.kv({"stage": "capture", "result": "draft_ready", "session": session_id})
                self._end_session()

    def _enter_error(self, reason: str) -> None:
        self.last_error = reason
        self._error_status = True
        self._notify()
        timer = self.timer_factory(self.error_display_seconds, self._reset_after_error)
        timer.daemon = True
        self._error_timer = timer
        timer.start()

    def _reset_after_error(self) -> None:
        with self._lock:
            if not self._error_status:
                return
            self._error_status = False
            self._error_timer = None
            self._notify()

    def _clear_error_state(self) -> None:
        if self._error_timer is not None:
            self._error_timer.cancel()
            self._error_timer = None
        self._error_status = False
