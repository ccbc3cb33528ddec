"""
Durable offline queue for segment bundles that could not be uploaded.

Entries move pending -> uploading -> completed | failed, and failed entries
may go back to uploading through retry(). Each transition is written to
sqlite before the upload starts, so a crash mid-upload leaves an entry that
is reconciled back to pending the next time the queue is opened.
"""

import json
import logging
import math
import mimetypes
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import config
from db.database import Database
from uploads.errors import (
    InvalidQueueTransition,
    QueueEntryNotFound,
    RetryExhausted,
    UploaderUnavailable,
    UploadFailure,
)

logger = logging.getLogger(__name__)

PENDING = "pending"
UPLOADING = "uploading"
COMPLETED = "completed"
FAILED = "failed"
STATUSES = (PENDING, UPLOADING, COMPLETED, FAILED)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_file_name(name: str) -> str:
    return re.sub(r'[<>:"/\\|?*]', "_", name)


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    return f"{round(size / 1024 ** i, 2):g} {units[i]}"


@dataclass
class SegmentBundle:
    input_files: list[Path]
    output_files: list[Path] = field(default_factory=list)
    session_id: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_manifest(cls, manifest: dict) -> "SegmentBundle":
        inputs, outputs = [], []
        for segment in manifest.get("segments", []):
            if segment.get("status") == "failed":
                continue
            inputs.append(Path(segment["inputFile"]))
            if segment.get("hasOutputAudio") and segment.get("outputFile"):
                outputs.append(Path(segment["outputFile"]))
        return cls(
            input_files=inputs,
            output_files=outputs,
            session_id=manifest.get("sessionId"),
            metadata={
                "totalSegments": manifest.get("totalSegments", len(inputs)),
                "totalDuration": manifest.get("totalDuration", 0),
            },
        )


@dataclass
class StoredFile:
    name: str
    size: int
    type: str
    blob_ref: str

    def to_dict(self) -> dict:
        return {"name": self.name, "size": self.size, "type": self.type, "blobRef": self.blob_ref}


@dataclass
class QueueEntry:
    id: str
    timestamp: str
    status: str
    attempts: int
    last_attempt: str | None
    error: str | None
    session_id: str | None = None
    input_files: list[StoredFile] = field(default_factory=list)
    output_files: list[StoredFile] = field(default_factory=list)
    result: dict | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def size(self) -> int:
        return sum(f.size for f in self.input_files + self.output_files)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
            "inputFiles": [f.to_dict() for f in self.input_files],
            "outputFiles": [f.to_dict() for f in self.output_files],
            "attempts": self.attempts,
            "lastAttempt": self.last_attempt,
            "status": self.status,
            "error": self.error,
            "result": self.result,
            "metadata": self.metadata,
        }


class LocalPersistenceQueue:
    def __init__(self, db: Database, blob_dir: str | Path,
                 uploader: Callable[[QueueEntry], dict] | None = None,
                 max_attempts: int = config.QUEUE_MAX_ATTEMPTS,
                 retry_delay: float = config.QUEUE_RETRY_DELAY_SECS,
                 sleep: Callable[[float], None] = time.sleep):
        self.db = db
        self.blob_dir = Path(blob_dir)
        self.blob_dir.mkdir(parents=True, exist_ok=True)
        self.uploader = uploader
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep
        self._lock = threading.RLock()

        reconciled = self.db.reset_uploading_entries()
        if reconciled:
            logger.warning("%d entradas interrumpidas durante la subida vuelven a 'pending'",
                           reconciled)

    # -- Reads --

    def _load(self, row: dict) -> QueueEntry:
        inputs, outputs = [], []
        for f in self.db.list_queue_files(row["id"]):
            stored = StoredFile(name=f["name"], size=f["size"], type=f["type"],
                                blob_ref=f["blob_ref"])
            (inputs if f["role"] == "input" else outputs).append(stored)
        return QueueEntry(
            id=row["id"],
            timestamp=row["timestamp"],
            status=row["status"],
            attempts=row["attempts"],
            last_attempt=row["last_attempt"],
            error=row["error"],
            session_id=row["session_id"],
            input_files=inputs,
            output_files=outputs,
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
        )

    def get(self, entry_id: str) -> QueueEntry:
        row = self.db.get_queue_entry(entry_id)
        if row is None:
            raise QueueEntryNotFound(entry_id)
        return self._load(row)

    def list(self, status: str | None = None) -> list[QueueEntry]:
        rows = self.db.list_queue_entries((status,) if status else None)
        return [self._load(row) for row in rows]

    def stats(self) -> dict:
        entries = self.list()
        total_size = sum(e.size for e in entries)
        counts = {s: sum(1 for e in entries if e.status == s) for s in STATUSES}
        return {
            "totalRecordings": len(entries),
            "pendingRecordings": counts[PENDING],
            "uploadingRecordings": counts[UPLOADING],
            "completedRecordings": counts[COMPLETED],
            "failedRecordings": counts[FAILED],
            "totalSizeBytes": total_size,
            "totalSize": format_bytes(total_size),
        }

    # -- Writes --

    def enqueue(self, bundle: SegmentBundle) -> str:
        entry_id = f"offline_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        entry_dir = self.blob_dir / entry_id
        entry_dir.mkdir(parents=True, exist_ok=True)

        files = []
        for role, paths in (("input", bundle.input_files), ("output", bundle.output_files)):
            for position, source in enumerate(Path(p) for p in paths):
                if not source.exists():
                    logger.warning("Archivo %s no encontrado, no se encola", source)
                    continue
                name = normalize_file_name(source.name)
                target = entry_dir / f"{role}_{position:03d}_{name}"
                shutil.copy2(source, target)
                files.append({
                    "role": role,
                    "position": position,
                    "name": name,
                    "size": target.stat().st_size,
                    "type": mimetypes.guess_type(name)[0] or "audio/wav",
                    "blob_ref": str(target),
                })

        if not any(f["role"] == "input" for f in files):
            shutil.rmtree(entry_dir, ignore_errors=True)
            raise ValueError("El paquete no contiene audio de microfono")

        self.db.insert_queue_entry(
            {
                "id": entry_id,
                "session_id": bundle.session_id,
                "timestamp": _now(),
                "metadata_json": json.dumps(bundle.metadata) if bundle.metadata else None,
            },
            files,
        )
        logger.info("Grabacion encolada para subir mas tarde: %s (%d archivos)", entry_id, len(files))
        return entry_id

    def _checked(self, entry_id: str, changed: bool, target: str) -> QueueEntry:
        row = self.db.get_queue_entry(entry_id)
        if row is None:
            raise QueueEntryNotFound(entry_id)
        if not changed:
            raise InvalidQueueTransition(f"{entry_id}: {row['status']} -> {target} no permitido")
        return self._load(row)

    def mark_uploading(self, entry_id: str) -> QueueEntry:
        changed = self.db.increment_queue_attempts(entry_id, _now(), (PENDING, FAILED))
        return self._checked(entry_id, changed, UPLOADING)

    def mark_completed(self, entry_id: str, result: dict | None = None) -> QueueEntry:
        changed = self.db.transition_queue_entry(
            entry_id,
            (UPLOADING,),
            status=COMPLETED,
            error=None,
            result_json=json.dumps(result) if result is not None else None,
        )
        return self._checked(entry_id, changed, COMPLETED)

    def mark_failed(self, entry_id: str, error: str) -> QueueEntry:
        changed = self.db.transition_queue_entry(entry_id, (UPLOADING,), status=FAILED, error=error)
        return self._checked(entry_id, changed, FAILED)

    def retry(self, entry_id: str) -> QueueEntry:
        with self._lock:
            entry = self.get(entry_id)
            if entry.status == COMPLETED:
                return entry
            if entry.attempts >= self.max_attempts:
                raise RetryExhausted(
                    f"{entry_id} supero el maximo de intentos ({self.max_attempts})"
                )
            if self.uploader is None:
                raise UploaderUnavailable("No hay gateway de subida configurado")

            entry = self.mark_uploading(entry_id)
            logger.info("Reintentando %s (intento %d/%d)", entry_id, entry.attempts,
                        self.max_attempts)
            try:
                result = self.uploader(entry)
            except Exception as e:
                logger.error("Fallo la subida de %s: %s", entry_id, e)
                failed = self.mark_failed(entry_id, str(e))
                if not isinstance(e, (UploadFailure, OSError)):
                    raise
                return failed
            return self.mark_completed(entry_id, result)

    def retry_all(self) -> dict:
        summary = {"attempted": 0, "succeeded": 0, "failed": 0, "skipped": 0}
        first = True
        for entry in self.list():
            if entry.status not in (PENDING, FAILED):
                continue
            if entry.attempts >= self.max_attempts:
                logger.info("Omitiendo %s: supero el maximo de intentos", entry.id)
                summary["skipped"] += 1
                continue
            if not first:
                self.sleep(self.retry_delay)
            first = False

            summary["attempted"] += 1
            try:
                updated = self.retry(entry.id)
            except RetryExhausted:
                summary["skipped"] += 1
                continue
            except Exception as e:
                logger.error("Error reintentando %s: %s", entry.id, e)
                summary["failed"] += 1
                continue
            if updated.status == COMPLETED:
                summary["succeeded"] += 1
            else:
                summary["failed"] += 1

        logger.info("Reintento masivo terminado: %s", summary)
        return summary

    def delete(self, entry_id: str):
        if not self.db.delete_queue_entry(entry_id):
            raise QueueEntryNotFound(entry_id)
        shutil.rmtree(self.blob_dir / entry_id, ignore_errors=True)

    def clear_all(self) -> int:
        removed = self.db.clear_queue()
        for child in self.blob_dir.iterdir():
            if child.is_dir():
                shutil.rmtree(child, ignore_errors=True)
        return removed
