import logging
import shutil
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

import config
from recorder.backends import ChannelHandle, ChannelKind
from recorder.capture import AudioCapture
from recorder.errors import CaptureUnavailable, RecorderBusy, RecorderIdle, RotationWriteFailure
from recorder.scheduler import Scheduler, TimerScheduler
from recorder.wav import duration_from_size

logger = logging.getLogger(__name__)


class RecorderState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    ROTATING = "rotating"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class Segment:
    id: str
    session_id: str
    index: int
    input_file: Path
    output_file: Path | None
    started_at: float
    has_output_audio: bool = False
    ended_at: float | None = None
    duration: float = 0.0
    input_size: int = 0
    output_size: int = 0
    status: str = "recording"
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "segmentId": self.id,
            "sessionId": self.session_id,
            "index": self.index,
            "inputFile": str(self.input_file),
            "outputFile": str(self.output_file) if self.output_file else None,
            "inputSize": self.input_size,
            "outputSize": self.output_size,
            "duration": self.duration,
            "startTime": self.started_at,
            "endTime": self.ended_at,
            "hasOutputAudio": self.has_output_audio,
            "status": self.status,
            "error": self.error,
        }


class SegmentRecorder:
    """Records one session at a time as fixed-duration dual-channel segments.

    IDLE -> RECORDING(k) -> ROTATING -> RECORDING(k+1) -> ... -> STOPPED.
    The rotation timer is the only asynchronous mutator of segment state;
    every transition happens under `_lock`.
    """

    def __init__(self, capture: AudioCapture, output_dir: str | Path,
                 segment_duration: float = config.SEGMENT_DURATION_SECS,
                 settle_delay: float = config.SETTLE_DELAY_SECS,
                 scheduler: Scheduler | None = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep,
                 on_segment: Callable[[Segment], None] | None = None):
        self.capture = capture
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.segment_duration = segment_duration
        self.settle_delay = settle_delay
        self.scheduler = scheduler or TimerScheduler()
        self.clock = clock
        self.sleep = sleep
        self.on_segment = on_segment

        self._lock = threading.Lock()
        self._state = RecorderState.IDLE
        self._session_id: str | None = None
        self._segments: list[Segment] = []
        self._current: Segment | None = None
        self._handles: tuple[ChannelHandle | None, ChannelHandle | None] = (None, None)
        self._next_index = 0
        self._timer = None
        self._tick = 0
        self._started_at = 0.0
        self._rotations = 0

    # -- Public API --

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def current_session_id(self) -> str | None:
        return self._session_id

    def is_recording(self) -> bool:
        return self._state in (RecorderState.RECORDING, RecorderState.ROTATING)

    def status(self) -> dict:
        with self._lock:
            return {
                "state": self._state.value,
                "sessionId": self._session_id,
                "segmentIndex": self._current.index if self._current else None,
                "finishedSegments": len(self._segments),
                "capture": self.capture.describe(),
            }

    def start(self, session_id: str | None = None) -> str:
        with self._lock:
            if self._state in (RecorderState.RECORDING, RecorderState.ROTATING,
                               RecorderState.STOPPING):
                raise RecorderBusy("Ya hay una grabacion en curso")

            self._session_id = session_id or str(uuid.uuid4())
            self._segments = []
            self._next_index = 0
            self._rotations = 0
            self._started_at = self.clock()
            try:
                self._open_segment()
            except Exception as e:
                logger.error("No se pudo iniciar la sesion %s: %s", self._session_id, e)
                self._session_id = None
                self._state = RecorderState.IDLE
                raise

            self._state = RecorderState.RECORDING
            self._schedule_rotation()
            logger.info("Sesion %s iniciada (segmentos de %ss)", self._session_id,
                        self.segment_duration)
            return self._session_id

    def stop(self) -> dict:
        with self._lock:
            if self._state is not RecorderState.RECORDING:
                raise RecorderIdle("No hay grabacion en curso")

            self._state = RecorderState.STOPPING
            self._cancel_timer()
            finished = None
            try:
                if self._current is not None:
                    finished = self._close_segment()
            finally:
                self._state = RecorderState.STOPPED
                manifest = self._build_manifest()

        self._notify(finished)
        logger.info(
            "Sesion %s detenida: %d segmentos, %.1fs",
            manifest["sessionId"], manifest["totalSegments"], manifest["totalDuration"],
        )
        return manifest

    def reset(self) -> dict | None:
        """Sale de un estado activo atascado. Los archivos capturados se conservan."""
        with self._lock:
            if self._state in (RecorderState.IDLE, RecorderState.STOPPED) and self._current is None:
                return None

            logger.warning("Reiniciando grabador en estado '%s'", self._state.value)
            self._cancel_timer()
            finished = None
            if self._current is not None:
                try:
                    finished = self._close_segment()
                except Exception as e:
                    logger.error("Error cerrando segmento durante el reinicio: %s", e)
                    self._current = None
                    self._handles = (None, None)
            manifest = self._build_manifest() if self._session_id else None
            self._session_id = None
            self._state = RecorderState.IDLE

        self._notify(finished)
        return manifest

    def cleanup_files(self, session_id: str):
        session_dir = self.output_dir / session_id
        with self._lock:
            if session_id == self._session_id and self.is_recording():
                raise RecorderBusy("La sesion sigue grabando")
        if session_dir.exists():
            shutil.rmtree(session_dir, ignore_errors=True)

    # -- Rotation --

    def _schedule_rotation(self):
        # Boundaries are absolute so stop and settle time never accumulate
        self._tick += 1
        tick = self._tick
        deadline = self._started_at + (self._rotations + 1) * self.segment_duration
        delay = max(0.0, deadline - self.clock())
        self._timer = self.scheduler.call_later(delay, lambda: self._on_timer(tick))

    def _cancel_timer(self):
        self._tick += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, tick: int):
        finished = None
        with self._lock:
            if tick != self._tick or self._state is not RecorderState.RECORDING:
                return
            self._timer = None
            self._rotations += 1
            self._state = RecorderState.ROTATING
            try:
                if self._current is not None:
                    finished = self._close_segment()
                try:
                    self._open_segment()
                except CaptureUnavailable as e:
                    # Keep the session alive; the next tick tries again
                    logger.error("Canal primario perdido en la sesion %s: %s", self._session_id, e)
            finally:
                self._state = RecorderState.RECORDING
                self._schedule_rotation()

        self._notify(finished)

    def _open_segment(self):
        index = self._next_index
        segment_id = f"{self._session_id}_segment_{index:03d}"
        session_dir = self.output_dir / self._session_id
        input_file = session_dir / f"input_{segment_id}.wav"
        output_file = session_dir / f"output_{segment_id}.wav"

        primary = self.capture.start_channel(input_file, ChannelKind.PRIMARY)
        secondary = self.capture.start_channel(output_file, ChannelKind.SECONDARY)
        if secondary is None:
            logger.info("Segmento %d sin audio del sistema, solo microfono", index)

        self._handles = (primary, secondary)
        self._current = Segment(
            id=segment_id,
            session_id=self._session_id,
            index=index,
            input_file=input_file,
            output_file=output_file if secondary else None,
            started_at=self.clock(),
            has_output_audio=secondary is not None,
        )
        self._next_index += 1

    def _close_segment(self) -> Segment:
        segment = self._current
        handles = [h for h in self._handles if h is not None]

        # Both channels stop concurrently; both must finish before stat
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [(h, pool.submit(h.stop)) for h in handles]
            for handle, future in futures:
                try:
                    future.result()
                except Exception as e:
                    logger.error("Error deteniendo canal %s: %s", handle.kind.value, e)

        if self.settle_delay > 0:
            self.sleep(self.settle_delay)

        segment.ended_at = self.clock()
        try:
            segment.input_size = segment.input_file.stat().st_size
            segment.duration = duration_from_size(segment.input_size, self.capture.fmt)
            segment.status = "completed"
        except OSError as e:
            failure = RotationWriteFailure(f"{segment.input_file.name}: {e}")
            logger.error("No se pudo finalizar el segmento: %s", failure)
            segment.input_size = 0
            segment.duration = 0.0
            segment.status = "failed"
            segment.error = f"{type(failure).__name__}: {failure}"

        if segment.has_output_audio:
            try:
                segment.output_size = segment.output_file.stat().st_size
            except OSError as e:
                logger.warning("Audio del sistema no encontrado para %s: %s", segment.id, e)
                segment.output_size = 0

        self._segments.append(segment)
        self._current = None
        self._handles = (None, None)
        logger.info(
            "Segmento %d guardado: %.2fMB entrada, %.2fMB salida",
            segment.index, segment.input_size / (1024 * 1024), segment.output_size / (1024 * 1024),
        )
        return segment

    def _build_manifest(self) -> dict:
        segments = list(self._segments)
        return {
            "sessionId": self._session_id,
            "totalSegments": len(segments),
            "segments": [s.to_dict() for s in segments],
            "totalDuration": sum(s.duration for s in segments),
            "totalInputSize": sum(s.input_size for s in segments),
            "totalOutputSize": sum(s.output_size for s in segments),
            "inputFiles": [str(s.input_file) for s in segments],
            "outputFiles": [str(s.output_file) for s in segments if s.output_file],
        }

    def _notify(self, segment: Segment | None):
        if segment is None or self.on_segment is None:
            return
        try:
            self.on_segment(segment)
        except Exception as e:
            logger.error("Error en callback de segmento %s: %s", segment.id, e)
