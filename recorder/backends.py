"""
Capture backends. Each backend opens one audio channel at a time and writes it
to a WAV sink until its handle is stopped.

- SoxBackend: `sox` subprocess per channel (macOS CoreAudio / Linux PulseAudio).
- StreamBackend: native WASAPI streams through PyAudioWPatch (Windows).
- PlaceholderBackend: header + one second of silence when nothing else works.
"""

import logging
import shutil
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

import config
from recorder.errors import CaptureError, SecondaryChannelUnavailable
from recorder.wav import (
    AudioFormat,
    downmix_to_mono,
    expand_channels,
    open_wav,
    resample,
    write_placeholder_wav,
)

if sys.platform == "win32":
    import pyaudiowpatch as pyaudio
else:
    pyaudio = None

logger = logging.getLogger(__name__)

CHUNK_DURATION_MS = 30
STOP_TIMEOUT_SECS = 5
SOX_STARTUP_GRACE_SECS = 0.2


class ChannelKind(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class ChannelHandle(ABC):
    def __init__(self, path: Path, kind: ChannelKind, backend: str):
        self.path = path
        self.kind = kind
        self.backend = backend
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self):
        """Detiene la captura. Al retornar el archivo esta escrito y cerrado."""
        with self._lock:
            if self._stopped:
                return
            try:
                self._stop()
            finally:
                self._stopped = True

    @abstractmethod
    def _stop(self):
        ...


class CaptureBackend(ABC):
    name = "base"

    def __init__(self, fmt: AudioFormat | None = None):
        self.fmt = fmt or AudioFormat()

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def open_channel(self, sink: Path, kind: ChannelKind) -> ChannelHandle:
        """Abre un canal hacia `sink`. Lanza CaptureError si no es posible."""

    def list_devices(self) -> list[dict]:
        return []


# -- SoX --

class SoxHandle(ChannelHandle):
    def __init__(self, path: Path, kind: ChannelKind, process: subprocess.Popen):
        super().__init__(path, kind, SoxBackend.name)
        self.process = process

    def _stop(self):
        if self.process.poll() is not None:
            return
        # SoX rewrites the WAV header when it receives SIGTERM
        self.process.terminate()
        try:
            self.process.wait(timeout=STOP_TIMEOUT_SECS)
        except subprocess.TimeoutExpired:
            logger.warning("SoX no termino a tiempo (%s), forzando cierre", self.path.name)
            self.process.kill()
            self.process.wait()


class SoxBackend(CaptureBackend):
    name = "sox"

    def __init__(self, fmt: AudioFormat | None = None, sox_path: str = config.SOX_PATH,
                 secondary_device: str | None = config.SECONDARY_DEVICE,
                 platform: str = sys.platform, popen=subprocess.Popen):
        super().__init__(fmt)
        self.sox_path = sox_path
        self.secondary_device = secondary_device
        self.platform = platform
        self._popen = popen

    def is_available(self) -> bool:
        if self.platform == "win32":
            return False
        return shutil.which(self.sox_path) is not None

    def _device_args(self, kind: ChannelKind) -> list[str]:
        if self.platform == "darwin":
            if kind is ChannelKind.PRIMARY:
                return ["-t", "coreaudio", "default"]
            return ["-t", "coreaudio", self.secondary_device or "BlackHole 2ch"]

        if self.platform.startswith("linux"):
            if kind is ChannelKind.PRIMARY:
                return ["-t", "pulseaudio", "default"]
            return ["-t", "pulseaudio", self.secondary_device or "default.monitor"]

        if kind is ChannelKind.PRIMARY:
            return ["-d"]
        if self.secondary_device:
            return ["-t", "alsa", self.secondary_device]
        raise SecondaryChannelUnavailable(
            f"Sin dispositivo de audio del sistema para la plataforma {self.platform}"
        )

    def build_command(self, sink: Path, kind: ChannelKind) -> list[str]:
        return [
            self.sox_path, "-q",
            *self._device_args(kind),
            "-r", str(self.fmt.sample_rate),
            "-c", str(self.fmt.channels),
            "-b", str(self.fmt.sample_width * 8),
            "-e", "signed-integer",
            str(sink),
        ]

    def open_channel(self, sink: Path, kind: ChannelKind) -> ChannelHandle:
        sink.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(sink, kind)
        try:
            process = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise CaptureError(f"No se pudo lanzar SoX: {e}") from e

        # A device that cannot be opened makes sox exit right away
        try:
            code = process.wait(timeout=SOX_STARTUP_GRACE_SECS)
        except subprocess.TimeoutExpired:
            logger.info("SoX (%s) grabando en %s", kind.value, sink.name)
            return SoxHandle(sink, kind, process)

        stderr = process.stderr.read().decode(errors="replace").strip() if process.stderr else ""
        raise CaptureError(f"SoX termino con codigo {code}: {stderr}")

    def list_devices(self) -> list[dict]:
        if self.platform == "darwin":
            return [
                {"id": "default", "name": "Default Input", "kind": "audioinput"},
                {"id": "blackhole", "name": self.secondary_device or "BlackHole 2ch",
                 "kind": "audioinput"},
                {"id": "default-out", "name": "Default Output", "kind": "audiooutput"},
            ]
        if self.platform.startswith("linux"):
            return [
                {"id": "default", "name": "PulseAudio Default Input", "kind": "audioinput"},
                {"id": "monitor", "name": self.secondary_device or "default.monitor",
                 "kind": "audiooutput"},
            ]
        return [{"id": "default", "name": "Default Input", "kind": "audioinput"}]


# -- PyAudioWPatch (WASAPI) --

class StreamHandle(ChannelHandle):
    def __init__(self, path: Path, kind: ChannelKind, stream, thread: threading.Thread,
                 stop_event: threading.Event):
        super().__init__(path, kind, StreamBackend.name)
        self.stream = stream
        self.thread = thread
        self.stop_event = stop_event

    def _stop(self):
        self.stop_event.set()
        self.thread.join(timeout=STOP_TIMEOUT_SECS)
        if self.thread.is_alive():
            # Unblock a read that is stuck on the device
            try:
                self.stream.stop_stream()
            except Exception as e:
                logger.warning("Error deteniendo stream %s: %s", self.path.name, e)
            self.thread.join()


class StreamBackend(CaptureBackend):
    name = "stream"

    def __init__(self, fmt: AudioFormat | None = None,
                 mic_device_index: int | None = config.MIC_DEVICE_INDEX,
                 loopback_device_index: int | None = config.LOOPBACK_DEVICE_INDEX,
                 pa_module=None):
        super().__init__(fmt)
        self.mic_device_index = mic_device_index
        self.loopback_device_index = loopback_device_index
        self._pyaudio = pa_module or pyaudio
        self._pa = None

    def is_available(self) -> bool:
        return self._pyaudio is not None

    def _get_pa(self):
        if self._pa is None:
            self._pa = self._pyaudio.PyAudio()
        return self._pa

    def list_devices(self) -> list[dict]:
        pa = self._get_pa()
        devices = []
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            if info.get("isLoopbackDevice", False):
                kind = "audiooutput"
            elif info["maxInputChannels"] > 0:
                kind = "audioinput"
            else:
                continue
            devices.append({"id": str(i), "name": info["name"], "kind": kind})
        return devices

    def _find_loopback_device(self) -> dict | None:
        pa = self._get_pa()
        if self.loopback_device_index is not None:
            return pa.get_device_info_by_index(self.loopback_device_index)
        try:
            wasapi_info = pa.get_host_api_info_by_type(self._pyaudio.paWASAPI)
        except OSError:
            logger.warning("WASAPI no disponible")
            return None

        default_output = pa.get_device_info_by_index(wasapi_info["defaultOutputDevice"])
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            if (
                info.get("isLoopbackDevice", False)
                and info["name"].startswith(default_output["name"].split(" (")[0])
            ):
                return info

        # Fallback: any loopback device
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            if info.get("isLoopbackDevice", False):
                return info
        return None

    def _find_mic_device(self) -> dict | None:
        pa = self._get_pa()
        if self.mic_device_index is not None:
            return pa.get_device_info_by_index(self.mic_device_index)
        try:
            wasapi_info = pa.get_host_api_info_by_type(self._pyaudio.paWASAPI)
            default_input_idx = wasapi_info["defaultInputDevice"]
            if default_input_idx >= 0:
                return pa.get_device_info_by_index(default_input_idx)
        except OSError:
            pass
        try:
            return pa.get_default_input_device_info()
        except OSError:
            return None

    def open_channel(self, sink: Path, kind: ChannelKind) -> ChannelHandle:
        if kind is ChannelKind.PRIMARY:
            device_info = self._find_mic_device()
            if device_info is None:
                raise CaptureError("No se encontro microfono")
            channels = int(device_info["maxInputChannels"])
        else:
            device_info = self._find_loopback_device()
            if device_info is None:
                raise SecondaryChannelUnavailable("No se encontro dispositivo loopback")
            channels = int(device_info.get("maxInputChannels")
                           or device_info.get("maxOutputChannels") or 2)
        channels = max(1, channels)
        source_rate = int(device_info["defaultSampleRate"])
        chunk_size = max(1, int(source_rate * CHUNK_DURATION_MS / 1000))

        try:
            stream = self._get_pa().open(
                format=self._pyaudio.paInt16,
                channels=channels,
                rate=source_rate,
                input=True,
                input_device_index=device_info["index"],
                frames_per_buffer=chunk_size,
            )
        except Exception as e:
            raise CaptureError(f"No se pudo abrir stream para {device_info['name']}: {e}") from e

        logger.info("%s: %s", "Microfono" if kind is ChannelKind.PRIMARY else "Loopback",
                    device_info["name"])
        wf = open_wav(sink, self.fmt)
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._record_stream,
            args=(stream, wf, channels, source_rate, chunk_size, stop_event),
            daemon=True,
        )
        thread.start()
        return StreamHandle(sink, kind, stream, thread, stop_event)

    def _record_stream(self, stream, wf, channels: int, source_rate: int, chunk_size: int,
                       stop_event: threading.Event):
        try:
            while not stop_event.is_set():
                try:
                    data = stream.read(chunk_size, exception_on_overflow=False)
                except Exception:
                    if stop_event.is_set():
                        break
                    continue
                data = downmix_to_mono(data, channels)
                data = resample(data, source_rate, self.fmt.sample_rate)
                data = expand_channels(data, self.fmt.channels)
                wf.writeframes(data)
        finally:
            try:
                stream.stop_stream()
                stream.close()
            except Exception:
                pass
            wf.close()

    def terminate(self):
        if self._pa:
            self._pa.terminate()
            self._pa = None


# -- Placeholder --

class PlaceholderHandle(ChannelHandle):
    def __init__(self, path: Path, kind: ChannelKind):
        super().__init__(path, kind, PlaceholderBackend.name)

    def _stop(self):
        pass


class PlaceholderBackend(CaptureBackend):
    name = "placeholder"

    def is_available(self) -> bool:
        return True

    def open_channel(self, sink: Path, kind: ChannelKind) -> ChannelHandle:
        if kind is ChannelKind.SECONDARY:
            raise SecondaryChannelUnavailable("El generador de silencio no captura audio del sistema")
        try:
            write_placeholder_wav(sink, self.fmt)
        except OSError as e:
            raise CaptureError(f"No se pudo escribir {sink.name}: {e}") from e
        logger.warning("Sin captura real disponible, segmento de silencio en %s", sink.name)
        return PlaceholderHandle(sink, kind)


BACKENDS = {
    SoxBackend.name: SoxBackend,
    StreamBackend.name: StreamBackend,
    PlaceholderBackend.name: PlaceholderBackend,
}


def probe_backends(fmt: AudioFormat | None = None, forced: str | None = config.CAPTURE_BACKEND,
                   placeholder_fallback: bool = config.PLACEHOLDER_FALLBACK) -> list[CaptureBackend]:
    """Elige una vez la cadena de backends: el mejor disponible y, si se permite,
    el generador de silencio como respaldo del canal primario.
    """
    fmt = fmt or AudioFormat()
    chain: list[CaptureBackend] = []

    if forced:
        if forced not in BACKENDS:
            raise ValueError(f"Backend de captura desconocido: {forced}")
        backend = BACKENDS[forced](fmt)
        if backend.is_available():
            chain.append(backend)
        else:
            logger.warning("Backend forzado '%s' no disponible", forced)
    else:
        for cls in (SoxBackend, StreamBackend):
            backend = cls(fmt)
            if backend.is_available():
                chain.append(backend)
                break

    if placeholder_fallback and not any(isinstance(b, PlaceholderBackend) for b in chain):
        chain.append(PlaceholderBackend(fmt))

    logger.info("Backends de captura: %s", ", ".join(b.name for b in chain) or "ninguno")
    return chain
