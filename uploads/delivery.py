import logging
from typing import Callable

from uploads.aggregator import SessionAggregator
from uploads.errors import UploadFailure
from uploads.gateway import UploadGateway
from uploads.queue import LocalPersistenceQueue, SegmentBundle

logger = logging.getLogger(__name__)


def deliver_manifest(manifest: dict, gateway: UploadGateway | None,
                     queue: LocalPersistenceQueue, aggregator: SessionAggregator | None = None,
                     cleanup: Callable[[str], None] | None = None) -> dict:
    """Sube los segmentos de una sesion terminada. Si la subida falla (o no hay
    gateway) el paquete queda en la cola offline; los archivos temporales solo
    se eliminan cuando el audio ya esta a salvo en el servidor o en la cola.
    """
    session_id = manifest.get("sessionId")
    bundle = SegmentBundle.from_manifest(manifest)
    if not bundle.input_files:
        logger.warning("Sesion %s sin segmentos validos, nada que subir", session_id)
        return {"uploaded": False, "queued": None}

    outcome = {"uploaded": False, "queued": None}
    try:
        if gateway is None:
            raise UploadFailure("Subida directa omitida: no hay gateway configurado")
        result = gateway.upload_segments(bundle.input_files, bundle.output_files)
    except (UploadFailure, OSError) as e:
        logger.warning("Subida directa de %s fallida (%s), encolando", session_id, e)
        outcome["queued"] = queue.enqueue(bundle)
        outcome["error"] = str(e)
    else:
        outcome["uploaded"] = True
        transcript = result.get("transcript") or {}
        transcript_id = transcript.get("id") or transcript.get("_id")
        if aggregator is not None and session_id and transcript_id:
            aggregator.attach_transcript(session_id, str(transcript_id))
        outcome["transcriptId"] = transcript_id

    if cleanup is not None and session_id:
        try:
            cleanup(session_id)
        except Exception as e:
            logger.warning("No se pudieron limpiar los temporales de %s: %s", session_id, e)
    return outcome
