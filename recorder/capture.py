import logging
from pathlib import Path

from recorder.backends import CaptureBackend, ChannelHandle, ChannelKind, probe_backends
from recorder.errors import CaptureError, CaptureUnavailable
from recorder.wav import AudioFormat

logger = logging.getLogger(__name__)


class AudioCapture:
    """Opens primary/secondary channels against the backend chain chosen at
    construction. Only a primary channel that no backend can open is an error.
    """

    def __init__(self, backends: list[CaptureBackend] | None = None,
                 fmt: AudioFormat | None = None):
        self.fmt = fmt or AudioFormat()
        self.backends = backends if backends is not None else probe_backends(self.fmt)

    @property
    def backend_names(self) -> list[str]:
        return [b.name for b in self.backends]

    def start_channel(self, sink: Path, kind: ChannelKind) -> ChannelHandle | None:
        if kind is ChannelKind.PRIMARY:
            return self._start_primary(sink)
        return self._start_secondary(sink)

    def _start_primary(self, sink: Path) -> ChannelHandle:
        errors = []
        for backend in self.backends:
            try:
                return backend.open_channel(sink, ChannelKind.PRIMARY)
            except (CaptureError, OSError) as e:
                logger.warning("Backend %s no pudo abrir el microfono: %s", backend.name, e)
                errors.append(f"{backend.name}: {e}")
        raise CaptureUnavailable(
            "No se pudo abrir el canal primario con ningun backend"
            + (f" ({'; '.join(errors)})" if errors else "")
        )

    def _start_secondary(self, sink: Path) -> ChannelHandle | None:
        if not self.backends:
            return None
        backend = self.backends[0]
        try:
            return backend.open_channel(sink, ChannelKind.SECONDARY)
        except (CaptureError, OSError) as e:
            logger.info("Audio del sistema no disponible (%s): %s", backend.name, e)
            return None

    def list_devices(self) -> list[dict]:
        devices = []
        seen = set()
        for backend in self.backends:
            try:
                found = backend.list_devices()
            except Exception as e:
                logger.warning("No se pudieron listar dispositivos de %s: %s", backend.name, e)
                continue
            for device in found:
                key = (device["id"], device["kind"])
                if key not in seen:
                    seen.add(key)
                    devices.append(device)
        return devices

    def describe(self) -> dict:
        return {
            "backends": self.backend_names,
            "sampleRate": self.fmt.sample_rate,
            "channels": self.fmt.channels,
            "bitDepth": self.fmt.sample_width * 8,
        }

    def terminate(self):
        for backend in self.backends:
            terminate = getattr(backend, "terminate", None)
            if terminate:
                terminate()
