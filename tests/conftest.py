"""
Pytest fixtures for RecVault tests.
"""

from pathlib import Path

import pytest

from db.database import Database
from recorder.backends import CaptureBackend, ChannelHandle, ChannelKind
from recorder.capture import AudioCapture
from recorder.errors import CaptureError, SecondaryChannelUnavailable
from recorder.segmenter import SegmentRecorder
from recorder.wav import AudioFormat, open_wav
from uploads.aggregator import SessionAggregator
from uploads.queue import LocalPersistenceQueue

FMT = AudioFormat(sample_rate=8000, channels=1, sample_width=2)


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCall:
    def __init__(self, due: float, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Fires callbacks when the test advances the fake clock past their due time."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[FakeCall] = []

    def call_later(self, delay, callback):
        call = FakeCall(self.clock.now + delay, callback)
        self.calls.append(call)
        return call

    @property
    def pending(self) -> list[FakeCall]:
        return [c for c in self.calls if not c.cancelled and c.due is not None]

    def advance(self, seconds: float):
        target = self.clock.now + seconds
        while True:
            due = [c for c in self.pending if c.due <= target]
            if not due:
                break
            call = min(due, key=lambda c: c.due)
            self.clock.now = max(self.clock.now, call.due)
            call.due = None
            call.callback()
        self.clock.now = max(self.clock.now, target)


class FakeHandle(ChannelHandle):
    """Writes elapsed-time worth of PCM when stopped."""

    def __init__(self, path: Path, kind: ChannelKind, clock: FakeClock, fmt: AudioFormat,
                 write: bool = True):
        super().__init__(path, kind, "fake")
        self.clock = clock
        self.fmt = fmt
        self.started_at = clock()
        self.write = write
        self.stop_calls = 0

    def _stop(self):
        self.stop_calls += 1
        if not self.write:
            return
        frames = int((self.clock() - self.started_at) * self.fmt.sample_rate)
        with open_wav(self.path, self.fmt) as wf:
            wf.writeframes(b"\x00" * frames * self.fmt.channels * self.fmt.sample_width)


class FakeBackend(CaptureBackend):
    name = "fake"

    def __init__(self, clock: FakeClock, fmt: AudioFormat = FMT, secondary: bool = True,
                 fail_primary: bool = False, write_primary: bool = True):
        super().__init__(fmt)
        self.clock = clock
        self.secondary = secondary
        self.fail_primary = fail_primary
        self.write_primary = write_primary
        self.handles: list[FakeHandle] = []

    def is_available(self) -> bool:
        return True

    def open_channel(self, sink: Path, kind: ChannelKind) -> ChannelHandle:
        if kind is ChannelKind.PRIMARY and self.fail_primary:
            raise CaptureError("microfono ocupado")
        if kind is ChannelKind.SECONDARY and not self.secondary:
            raise SecondaryChannelUnavailable("sin loopback")
        sink.parent.mkdir(parents=True, exist_ok=True)
        write = self.write_primary or kind is ChannelKind.SECONDARY
        handle = FakeHandle(sink, kind, self.clock, self.fmt, write=write)
        self.handles.append(handle)
        return handle

    def list_devices(self) -> list[dict]:
        return [
            {"id": "mic", "name": "Fake Mic", "kind": "audioinput"},
            {"id": "loop", "name": "Fake Loopback", "kind": "audiooutput"},
        ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return FakeScheduler(clock)


@pytest.fixture
def backend(clock):
    return FakeBackend(clock)


@pytest.fixture
def capture(backend):
    return AudioCapture([backend], fmt=FMT)


@pytest.fixture
def make_recorder(tmp_path, capture, scheduler, clock):
    def _make(segment_duration=60.0, settle_delay=1.0, on_segment=None, capture_=None):
        return SegmentRecorder(
            capture_ or capture,
            tmp_path / "recordings",
            segment_duration=segment_duration,
            settle_delay=settle_delay,
            scheduler=scheduler,
            clock=clock,
            sleep=clock.sleep,
            on_segment=on_segment,
        )
    return _make


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def aggregator(db):
    return SessionAggregator(db)


@pytest.fixture
def make_queue(db, tmp_path, clock):
    def _make(uploader=None, max_attempts=3, retry_delay=5.0, database=None):
        return LocalPersistenceQueue(
            database or db,
            tmp_path / "queue",
            uploader=uploader,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            sleep=clock.sleep,
        )
    return _make


@pytest.fixture
def wav_files(tmp_path):
    """Two small primary WAVs and one secondary WAV on disk."""
    src = tmp_path / "src"
    paths = {}
    for name in ("input_0.wav", "input_1.wav", "output_0.wav"):
        path = src / name
        with open_wav(path, FMT) as wf:
            wf.writeframes(b"\x00" * 1600)
        paths[name] = path
    return paths
