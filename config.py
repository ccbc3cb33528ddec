import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Rutas
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("RECVAULT_DATA_DIR", str(BASE_DIR / "data")))
RECORDINGS_DIR = DATA_DIR / "recordings"
QUEUE_DIR = DATA_DIR / "queue"
DB_PATH = DATA_DIR / "recvault.db"

# Servidor
HOST = "127.0.0.1"
PORT = 8787
MIN_FREE_DISK_BYTES = 500 * 1024 * 1024

# Audio
SAMPLE_RATE = int(os.getenv("RECVAULT_SAMPLE_RATE", "16000"))
CHANNELS = int(os.getenv("RECVAULT_CHANNELS", "1"))
SAMPLE_WIDTH = 2  # 16-bit PCM
SEGMENT_DURATION_SECS = float(os.getenv("RECORDING_SEGMENT_DURATION", "60"))
SETTLE_DELAY_SECS = float(os.getenv("RECVAULT_SETTLE_DELAY", "1.0"))

# Captura
CAPTURE_BACKEND = os.getenv("RECVAULT_CAPTURE_BACKEND")  # None = autodetectar
PLACEHOLDER_FALLBACK = _env_bool("RECVAULT_PLACEHOLDER_FALLBACK", True)
SOX_PATH = os.getenv("RECVAULT_SOX_PATH", "sox")
SECONDARY_DEVICE = os.getenv("RECVAULT_SECONDARY_DEVICE")  # None = por plataforma

# Dispositivos de audio (None = autodetectar)
LOOPBACK_DEVICE_INDEX = None
MIC_DEVICE_INDEX = None

# Subida
UPLOAD_URL = os.getenv("RECVAULT_UPLOAD_URL", "http://localhost:5000")
UPLOAD_TOKEN = os.getenv("RECVAULT_UPLOAD_TOKEN", "")
UPLOAD_TIMEOUT_SECS = float(os.getenv("RECVAULT_UPLOAD_TIMEOUT", "120"))
UPLOAD_AUDIO_FORMAT = os.getenv("RECVAULT_UPLOAD_FORMAT", "wav")
OWNER_ID = os.getenv("RECVAULT_OWNER_ID")

# Cola offline
QUEUE_MAX_ATTEMPTS = int(os.getenv("RECVAULT_QUEUE_MAX_ATTEMPTS", "3"))
QUEUE_RETRY_DELAY_SECS = float(os.getenv("RECVAULT_QUEUE_RETRY_DELAY", "5"))
RETRY_QUEUE_ON_START = _env_bool("RECVAULT_RETRY_QUEUE_ON_START", True)
