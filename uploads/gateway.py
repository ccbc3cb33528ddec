import logging
import mimetypes
import tempfile
from contextlib import ExitStack
from pathlib import Path

import requests
from pydantic import ValidationError
from pydub.exceptions import CouldntDecodeError, CouldntEncodeError

import config
from recorder.wav import wav_to_mp3
from uploads.errors import UploadFailure
from uploads.schemas import RecordingListing, UploadResponse

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/audio/upload-segmented-dual"
RECORDINGS_PATH = "/api/recordings"


class UploadGateway:
    """HTTP client for the remote endpoint that receives segment bundles."""

    def __init__(self, base_url: str = config.UPLOAD_URL, token: str | None = config.UPLOAD_TOKEN,
                 timeout: float = config.UPLOAD_TIMEOUT_SECS,
                 audio_format: str = config.UPLOAD_AUDIO_FORMAT,
                 session: requests.Session | None = None):
        if audio_format not in ("wav", "mp3"):
            raise ValueError(f"Formato de subida no soportado: {audio_format}")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.audio_format = audio_format
        self._http = session or requests.Session()

    def _headers(self) -> dict:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def _prepare(self, path: Path, workdir: Path) -> Path:
        if self.audio_format == "mp3" and path.suffix.lower() == ".wav":
            mp3_path = workdir / f"{path.stem}.mp3"
            wav_to_mp3(path, mp3_path)
            return mp3_path
        return path

    def upload_segments(self, input_files: list, output_files: list | None = None) -> dict:
        input_paths = [Path(p) for p in input_files]
        if not input_paths:
            raise ValueError("Se requiere al menos un archivo de microfono")
        # The gateway pairs system files with microphone files by position
        output_paths = [Path(p) for p in (output_files or [])][: len(input_paths)]

        with tempfile.TemporaryDirectory() as tmp, ExitStack() as stack:
            workdir = Path(tmp)
            parts = []
            for role, prefix, paths in (("microphone", "mic", input_paths),
                                        ("system", "sys", output_paths)):
                for i, path in enumerate(paths):
                    try:
                        prepared = self._prepare(path, workdir)
                        handle = stack.enter_context(open(prepared, "rb"))
                    except (OSError, CouldntDecodeError, CouldntEncodeError) as e:
                        raise UploadFailure(f"No se pudo preparar {path.name}: {e}") from e
                    mime = mimetypes.guess_type(prepared.name)[0] or "audio/wav"
                    parts.append((role, (f"{prefix}_{i}{prepared.suffix}", handle, mime)))

            data = {"isSegmented": "true", "totalSegments": str(len(input_paths))}
            logger.info("Subiendo %d segmentos (%d con audio del sistema)",
                        len(input_paths), len(output_paths))
            try:
                response = self._http.post(
                    f"{self.base_url}{UPLOAD_PATH}",
                    files=parts,
                    data=data,
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise UploadFailure(f"Error de red: {e}") from e

        return self._parse_upload(response)

    def _parse_upload(self, response: requests.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            detail = body.get("error") if isinstance(body, dict) else None
            raise UploadFailure(
                f"HTTP {response.status_code}: {detail or response.reason}",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise UploadFailure("Respuesta invalida del servidor", status_code=response.status_code)

        try:
            parsed = UploadResponse.model_validate(body)
        except ValidationError as e:
            raise UploadFailure(f"Respuesta invalida del servidor: {e}") from e
        if not parsed.success:
            raise UploadFailure(parsed.error or "El servidor rechazo la subida",
                                status_code=response.status_code)
        return parsed.model_dump(exclude_none=True)

    def upload_entry(self, entry) -> dict:
        return self.upload_segments(
            [f.blob_ref for f in entry.input_files],
            [f.blob_ref for f in entry.output_files],
        )

    def list_recordings(self, **params) -> RecordingListing:
        try:
            response = self._http.get(
                f"{self.base_url}{RECORDINGS_PATH}",
                params=params or None,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise UploadFailure(f"No se pudo obtener el listado: {e}") from e
        try:
            return RecordingListing.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UploadFailure(f"Listado invalido: {e}") from e
