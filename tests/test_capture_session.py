import threading

import pytest

from citavoz.appointment_models import ParsedAppointmentDraft
from citavoz.capture_session import (
    CaptureEnded,
    CaptureFailed,
    CaptureInProgressError,
    CaptureStateMachine,
    CaptureStatus,
    ScriptedSpeechProvider,
    SpeechCaptureProvider,
    TranscriptUpdate,
)

DRAFT = ParsedAppointmentDraft(patient_name="Ana", date_str="2026-10-20", time_str="15:00")


class FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function()


class ManualProvider(SpeechCaptureProvider):
    """Keeps every listener so tests can push events, including stale ones."""

    def __init__(self, fail_on_start=False, event_on_stop=None):
        self.fail_on_start = fail_on_start
        self.event_on_stop = event_on_stop
        self.listeners = []
        self.calls = []

    def start(self, listener):
        self.calls.append("start")
        if self.fail_on_start:
            raise OSError("microphone unavailable")
        self.listeners.append(listener)

    def stop(self):
        self.calls.append("stop")
        if self.event_on_stop is not None:
            # Recognizers may fire their end callback synchronously
            self.listeners[-1](self.event_on_stop)

    def abort(self):
        self.calls.append("abort")

    def say(self, text, index=-1):
        self.listeners[index](TranscriptUpdate(text))


@pytest.fixture
def timers():
    created = []

    def factory(interval, function):
        timer = FakeTimer(interval, function)
        created.append(timer)
        return timer

    factory.created = created
    return factory


@pytest.fixture
def drafts():
    return []


def make_machine(provider, drafts, timers, extractor=lambda text: DRAFT, **kwargs):
    return CaptureStateMachine(
        provider,
        on_draft=drafts.append,
        extractor=extractor,
        timer_factory=timers,
        **kwargs,
    )


def test_happy_path_from_idle_to_draft(drafts, timers):
    seen = []
    provider = ScriptedSpeechProvider(["Crea", "Crea una", "Crea una cita mañana"])
    machine = make_machine(provider, drafts, timers, extractor=lambda text: seen.append(text) or DRAFT)
    assert machine.status is CaptureStatus.IDLE

    session = machine.start()
    assert machine.status is CaptureStatus.LISTENING
    assert machine.live_transcript == "Crea una cita mañana"

    machine.stop()
    assert machine.status is CaptureStatus.AWAITING_REVIEW
    assert session.final_transcript == "Crea una cita mañana"

    machine.confirm_review("Crea una cita mañana a las 3pm")
    assert seen == ["Crea una cita mañana a las 3pm"]
    assert drafts == [DRAFT]
    assert machine.status is CaptureStatus.IDLE
    assert machine.session is None


def test_updates_replace_the_live_transcript(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()

    provider.say("Crea una")
    provider.say("Crea una cita")

    assert machine.live_transcript == "Crea una cita"


@pytest.mark.parametrize("text", ["", "sí", "abc", "  ab   "])
def test_short_transcript_is_discarded_on_stop(drafts, timers, text):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say(text)

    machine.stop()

    assert machine.status is CaptureStatus.IDLE
    assert machine.session is None
    assert provider.calls == ["start", "stop"]


def test_transcript_just_over_threshold_goes_to_review(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say("hola")

    machine.stop()

    assert machine.status is CaptureStatus.AWAITING_REVIEW


def test_threshold_is_configurable(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers, min_transcript_length=10)
    machine.start()
    provider.say("hola hola")

    machine.stop()

    assert machine.status is CaptureStatus.IDLE


def test_provider_end_event_freezes_transcript(drafts, timers):
    machine = make_machine(ScriptedSpeechProvider(["Cita con Ana"], end_after_script=True), drafts, timers)

    machine.start()

    assert machine.status is CaptureStatus.AWAITING_REVIEW
    assert machine.session.final_transcript == "Cita con Ana"


def test_second_start_while_live_is_rejected(drafts, timers):
    machine = make_machine(ManualProvider(), drafts, timers)
    machine.start()

    with pytest.raises(CaptureInProgressError):
        machine.start()
    assert machine.status is CaptureStatus.LISTENING


def test_cancel_while_listening_aborts_provider(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say("Cita con Ana")

    machine.cancel()

    assert machine.status is CaptureStatus.IDLE
    assert provider.calls == ["start", "abort"]


def test_cancel_during_review_discards_transcript(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say("Cita con Ana")
    machine.stop()

    machine.cancel()
    machine.confirm_review("Cita con Ana")

    assert machine.status is CaptureStatus.IDLE
    assert drafts == []


def test_events_from_an_old_session_are_dropped(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()
    machine.cancel()
    machine.start()

    provider.say("texto viejo", index=0)
    provider.listeners[0](CaptureEnded())

    assert machine.status is CaptureStatus.LISTENING
    assert machine.live_transcript == ""


def test_events_after_review_are_ignored(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say("Cita con Ana")
    machine.stop()

    provider.say("Cita con Ana mañana")

    assert machine.session.final_transcript == "Cita con Ana"
    assert machine.status is CaptureStatus.AWAITING_REVIEW


def test_stop_outside_listening_is_ignored(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)

    machine.stop()

    assert machine.status is CaptureStatus.IDLE
    assert provider.calls == []


def test_capture_failure_shows_error_then_resets(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers, error_display_seconds=3.0)
    machine.start()

    provider.listeners[0](CaptureFailed("not-allowed"))

    assert machine.status is CaptureStatus.ERROR
    assert machine.last_error == "not-allowed"
    assert provider.calls == ["start", "abort"]
    timer = timers.created[-1]
    assert timer.interval == 3.0
    assert timer.daemon and timer.started

    timer.fire()
    assert machine.status is CaptureStatus.IDLE


def test_provider_start_failure_enters_error(drafts, timers):
    machine = make_machine(ManualProvider(fail_on_start=True), drafts, timers)

    assert machine.start() is None

    assert machine.status is CaptureStatus.ERROR
    assert "microphone" in machine.last_error


def test_missing_provider_enters_error(drafts, timers):
    machine = make_machine(None, drafts, timers)

    assert machine.start() is None

    assert machine.status is CaptureStatus.ERROR
    assert machine.last_error == "capture_unsupported"
    timers.created[-1].fire()
    assert machine.status is CaptureStatus.IDLE


def test_processing_failure_enters_error(drafts, timers):
    def broken(text):
        raise RuntimeError("service unavailable")

    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers, extractor=broken)
    machine.start()
    provider.say("Cita con Ana")
    machine.stop()

    machine.confirm_review("Cita con Ana")

    assert machine.status is CaptureStatus.ERROR
    assert machine.session is None
    assert drafts == []


def test_start_from_error_cancels_reset_timer(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.listeners[0](CaptureFailed("network"))
    timer = timers.created[-1]

    machine.start()

    assert timer.cancelled
    assert machine.status is CaptureStatus.LISTENING
    timer.fire()
    assert machine.status is CaptureStatus.LISTENING


def test_cancel_clears_error(drafts, timers):
    machine = make_machine(None, drafts, timers)
    machine.start()

    machine.cancel()

    assert machine.status is CaptureStatus.IDLE


def test_status_listeners_follow_transitions(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    statuses = []
    machine.add_status_listener(statuses.append)

    machine.start()
    provider.say("Cita con Ana")
    machine.stop()
    machine.confirm_review("Cita con Ana")

    assert statuses == [
        CaptureStatus.LISTENING,
        CaptureStatus.AWAITING_REVIEW,
        CaptureStatus.PROCESSING,
        CaptureStatus.IDLE,
    ]


def test_background_result_is_dropped_after_cancel(drafts, timers):
    release = threading.Event()
    entered = threading.Event()

    def slow(text):
        entered.set()
        release.wait(5)
        return DRAFT

    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers, extractor=slow)
    machine.start()
    provider.say("Cita con Ana")
    machine.stop()

    machine.confirm_review("Cita con Ana", run_in_background=True)
    assert entered.wait(5)
    assert machine.status is CaptureStatus.PROCESSING

    machine.cancel()
    release.set()
    machine.wait(5)

    assert drafts == []
    assert machine.status is CaptureStatus.IDLE


def test_background_result_is_delivered(drafts, timers):
    provider = ManualProvider()
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say("Cita con Ana")
    machine.stop()

    machine.confirm_review("Cita con Ana", run_in_background=True)
    machine.wait(5)

    assert drafts == [DRAFT]
    assert machine.status is CaptureStatus.IDLE


def test_short_transcript_ended_by_provider_during_stop(drafts, timers):
    provider = ManualProvider(event_on_stop=CaptureEnded())
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say("ab")

    machine.stop()

    assert machine.status is CaptureStatus.IDLE
    assert machine.session is None
    assert machine.last_error is None


def test_transcript_ended_by_provider_during_stop_goes_to_review(drafts, timers):
    provider = ManualProvider(event_on_stop=CaptureEnded())
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say("Cita con Ana")

    machine.stop()

    assert machine.status is CaptureStatus.AWAITING_REVIEW
    assert machine.session.final_transcript == "Cita con Ana"


def test_provider_failure_during_stop_enters_error(drafts, timers):
    provider = ManualProvider(event_on_stop=CaptureFailed("no-speech"))
    machine = make_machine(provider, drafts, timers)
    machine.start()
    provider.say("Cita con Ana")

    machine.stop()

    assert machine.status is CaptureStatus.ERROR
    assert machine.last_error == "no-speech"
    assert machine.session is None
