class CaptureError(RuntimeError):
    pass


class CaptureUnavailable(CaptureError):
    """Ningun backend pudo abrir el canal primario."""


class SecondaryChannelUnavailable(CaptureError):
    """El canal secundario (audio del sistema) no esta disponible."""


class RotationWriteFailure(CaptureError):
    """Un archivo de segmento no pudo finalizarse."""


class RecorderBusy(RuntimeError):
    pass


class RecorderIdle(RuntimeError):
    pass
