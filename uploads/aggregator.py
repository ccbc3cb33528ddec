import logging
import uuid
from datetime import datetime, timezone
from enum import Enum

from db.database import Database
from recorder.segmenter import Segment
from uploads.errors import SessionNotFound
from uploads.schemas import ChunkStatus, RecordingMetadata, RecordingRecord

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


def derive_status(successful: int, failed: int, finalized: bool) -> SessionStatus:
    if successful == 0 and failed == 0:
        return SessionStatus.PENDING
    if not finalized:
        return SessionStatus.PROCESSING
    if failed == 0:
        return SessionStatus.COMPLETED
    if successful == 0:
        return SessionStatus.FAILED
    return SessionStatus.COMPLETED_WITH_ERRORS


def _chunk_from_result(result) -> dict:
    if isinstance(result, Segment):
        result = result.to_dict()
    status = "completed" if result.get("status") == "completed" else "failed"
    output_file = result.get("outputFile") if result.get("hasOutputAudio") else None
    return {
        "segment_id": result["segmentId"],
        "segment_index": int(result.get("index", 0)),
        "status": status,
        "duration": float(result.get("duration") or 0.0),
        "input_file": result.get("inputFile"),
        "output_file": output_file,
        "input_size": int(result.get("inputSize") or 0),
        "output_size": int(result.get("outputSize") or 0),
        "error": result.get("error"),
    }


class SessionAggregator:
    """Groups the segments of one recording under a parent session.

    Counters, totals and status are always computed from the stored chunks;
    nothing derived is persisted on the session row.
    """

    def __init__(self, db: Database):
        self.db = db

    def _require(self, session_id: str) -> dict:
        row = self.db.get_session(session_id)
        if row is None:
            raise SessionNotFound(session_id)
        return row

    def create_parent_session(self, expected_segments: int = 0, session_id: str | None = None,
                              owner_id: str | None = None) -> dict:
        session_id = session_id or str(uuid.uuid4())
        self.db.insert_session(session_id, owner_id, expected_segments)
        return self.get(session_id)

    def add_chunk(self, session_id: str, segment_result) -> dict:
        self._require(session_id)
        chunk = _chunk_from_result(segment_result)
        self.db.upsert_chunk(session_id, chunk)
        logger.info("Sesion %s: segmento %d %s", session_id, chunk["segment_index"],
                    chunk["status"])
        return self.get(session_id)

    def finalize(self, session_id: str, expected_segments: int | None = None) -> dict:
        row = self._require(session_id)
        fields = {}
        if not row["finalized"]:
            fields["finalized"] = 1
            fields["finalized_at"] = datetime.now(timezone.utc).isoformat()
        if expected_segments is not None and expected_segments != row["expected_segments"]:
            fields["expected_segments"] = expected_segments
        if fields:
            self.db.update_session(session_id, **fields)
        return self.get(session_id)

    def attach_transcript(self, session_id: str, transcript_id: str) -> dict:
        self._require(session_id)
        self.db.update_session(session_id, transcript_id=transcript_id)
        return self.get(session_id)

    def get(self, session_id: str) -> dict:
        row = self._require(session_id)
        chunks = self.db.list_chunks(session_id)
        successful = sum(1 for c in chunks if c["status"] == "completed")
        failed = len(chunks) - successful
        return {
            "id": row["id"],
            "ownerId": row["owner_id"],
            "expectedSegments": row["expected_segments"],
            "children": [c["segment_id"] for c in chunks],
            "successfulChunks": successful,
            "failedChunks": failed,
            "status": derive_status(successful, failed, bool(row["finalized"])).value,
            "finalized": bool(row["finalized"]),
            "totalDuration": sum(c["duration"] for c in chunks),
            "totalSize": sum(c["input_size"] + c["output_size"] for c in chunks),
            "transcriptId": row["transcript_id"],
            "createdAt": row["created_at"],
        }

    def flatten(self, session_id: str) -> dict:
        self._require(session_id)
        chunks = self.db.list_chunks(session_id)
        audio_files = []
        for c in chunks:
            if c["input_file"]:
                audio_files.append(c["input_file"])
            if c["output_file"]:
                audio_files.append(c["output_file"])
        return {
            "totalSegments": len(chunks),
            "chunkStatuses": [
                {"id": c["segment_id"], "segmentIndex": c["segment_index"], "status": c["status"]}
                for c in chunks
            ],
            "audioFiles": audio_files,
        }

    def to_listing(self, session_id: str) -> dict:
        session = self.get(session_id)
        flat = self.flatten(session_id)
        record = RecordingRecord(
            id=session["id"],
            sessionId=session["id"],
            isParentSession=True,
            transcriptId=session["transcriptId"],
            status=session["status"],
            audioFiles=flat["audioFiles"],
            metadata=RecordingMetadata(
                totalSegments=flat["totalSegments"],
                successfulChunks=session["successfulChunks"],
                failedChunks=session["failedChunks"],
                chunkStatuses=[ChunkStatus(**c) for c in flat["chunkStatuses"]],
            ),
        )
        return record.model_dump()

    def list_sessions(self) -> list[dict]:
        return [self.to_listing(row["id"]) for row in self.db.list_sessions()]

    def discard(self, session_id: str) -> bool:
        """Elimina una sesion que nunca llego a grabar segmentos."""
        if self.db.list_chunks(session_id):
            raise ValueError(f"La sesion {session_id} ya tiene segmentos")
        return self.db.delete_session(session_id)
