import struct
import wave
from dataclasses import dataclass
from pathlib import Path

from pydub import AudioSegment

import config

WAV_HEADER_BYTES = 44


@dataclass(frozen=True)
class AudioFormat:
    sample_rate: int = config.SAMPLE_RATE
    channels: int = config.CHANNELS
    sample_width: int = config.SAMPLE_WIDTH

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * self.sample_width


def open_wav(path: Path, fmt: AudioFormat) -> wave.Wave_write:
    path.parent.mkdir(parents=True, exist_ok=True)
    wf = wave.open(str(path), "wb")
    wf.setnchannels(fmt.channels)
    wf.setsampwidth(fmt.sample_width)
    wf.setframerate(fmt.sample_rate)
    return wf


def write_placeholder_wav(path: Path, fmt: AudioFormat, seconds: float = 1.0) -> int:
    """Escribe un WAV valido con cabecera canonica y `seconds` de silencio.
    Retorna el tamano final del archivo en bytes.
    """
    n_frames = int(fmt.sample_rate * seconds)
    with open_wav(path, fmt) as wf:
        wf.writeframes(b"\x00" * (n_frames * fmt.channels * fmt.sample_width))
    return path.stat().st_size


def duration_from_size(size_bytes: int, fmt: AudioFormat) -> float:
    """Duracion en segundos a partir del tamano del archivo (sin la cabecera)."""
    payload = max(0, size_bytes - WAV_HEADER_BYTES)
    return payload / fmt.bytes_per_second


def downmix_to_mono(data: bytes, channels: int) -> bytes:
    if channels <= 1:
        return data
    samples = struct.unpack(f"<{len(data) // 2}h", data)
    mono = []
    for i in range(0, len(samples) - channels + 1, channels):
        frame_samples = samples[i : i + channels]
        mono.append(int(sum(frame_samples) / channels))
    return struct.pack(f"<{len(mono)}h", *mono)


def expand_channels(data: bytes, channels: int) -> bytes:
    """Duplica cada muestra mono en `channels` canales."""
    if channels <= 1 or not data:
        return data
    samples = struct.unpack(f"<{len(data) // 2}h", data)
    interleaved = [s for s in samples for _ in range(channels)]
    return struct.pack(f"<{len(interleaved)}h", *interleaved)


def resample(data: bytes, source_rate: int, target_rate: int) -> bytes:
    """Remuestreo por vecino mas cercano de PCM 16-bit mono."""
    if source_rate == target_rate or not data:
        return data
    samples = struct.unpack(f"<{len(data) // 2}h", data)
    ratio = target_rate / source_rate
    new_len = int(len(samples) * ratio)
    if new_len <= 0:
        return b""
    resampled = []
    for i in range(new_len):
        src_idx = min(int(i / ratio), len(samples) - 1)
        resampled.append(samples[src_idx])
    return struct.pack(f"<{len(resampled)}h", *resampled)


def wav_to_mp3(wav_path: Path, mp3_path: Path):
    """Convierte un archivo WAV a MP3 usando pydub/ffmpeg."""
    audio = AudioSegment.from_wav(str(wav_path))
    audio.export(str(mp3_path), format="mp3", bitrate="64k")
