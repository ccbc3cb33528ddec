import logging
import shutil
import threading
import uuid
from typing import Callable

from fastapi import APIRouter, HTTPException

import config
from recorder.errors import CaptureUnavailable, RecorderBusy, RecorderIdle
from recorder.segmenter import SegmentRecorder
from uploads.aggregator import SessionAggregator
from uploads.delivery import deliver_manifest
from uploads.errors import (
    InvalidQueueTransition,
    QueueEntryNotFound,
    RetryExhausted,
    SessionNotFound,
    UploaderUnavailable,
)
from uploads.gateway import UploadGateway
from uploads.queue import LocalPersistenceQueue

logger = logging.getLogger(__name__)


def _spawn_thread(target: Callable, *args):
    threading.Thread(target=target, args=args, daemon=True).start()


def create_router(recorder: SegmentRecorder, aggregator: SessionAggregator,
                  queue: LocalPersistenceQueue, gateway: UploadGateway | None,
                  spawn: Callable = _spawn_thread) -> APIRouter:
    router = APIRouter()

    def _finish_session(manifest: dict):
        session_id = manifest["sessionId"]
        try:
            aggregator.finalize(session_id, expected_segments=manifest["totalSegments"])
        except SessionNotFound:
            logger.warning("Sesion %s no registrada, se entrega sin agregar", session_id)

    def _deliver(manifest: dict):
        try:
            deliver_manifest(manifest, gateway, queue, aggregator, cleanup=recorder.cleanup_files)
        except Exception as e:
            logger.error("Error entregando la sesion %s: %s", manifest.get("sessionId"), e)

    # -- Status --

    @router.get("/status")
    def get_status():
        return {
            "is_recording": recorder.is_recording(),
            "recorder": recorder.status(),
            "queue": queue.stats(),
        }

    # -- Devices --

    @router.get("/devices")
    def list_devices():
        return {"success": True, "devices": recorder.capture.list_devices()}

    # -- Recording control --

    @router.post("/recording/start")
    def start_recording():
        if recorder.is_recording():
            raise HTTPException(409, "Ya hay una grabacion en curso")

        # Check disk space
        free = shutil.disk_usage(recorder.output_dir).free
        if free < config.MIN_FREE_DISK_BYTES:
            raise HTTPException(507, "Espacio en disco insuficiente")

        session_id = str(uuid.uuid4())
        aggregator.create_parent_session(0, session_id=session_id, owner_id=config.OWNER_ID)
        try:
            recorder.start(session_id)
        except RecorderBusy as e:
            aggregator.discard(session_id)
            raise HTTPException(409, str(e))
        except CaptureUnavailable as e:
            aggregator.discard(session_id)
            raise HTTPException(503, str(e))

        return {"success": True, "sessionId": session_id}

    @router.post("/recording/stop")
    def stop_recording():
        try:
            manifest = recorder.stop()
        except RecorderIdle as e:
            raise HTTPException(400, str(e))

        _finish_session(manifest)
        spawn(_deliver, manifest)
        return {"success": True, "manifest": manifest}

    @router.post("/recording/reset")
    def reset_recording():
        manifest = recorder.reset()
        if manifest and manifest["totalSegments"]:
            _finish_session(manifest)
            spawn(_deliver, manifest)
        return {"success": True, "manifest": manifest}

    # -- Recordings --

    @router.get("/recordings")
    def list_recordings():
        return {"recordings": aggregator.list_sessions()}

    @router.get("/recordings/{session_id}")
    def get_recording(session_id: str):
        try:
            listing = aggregator.to_listing(session_id)
            session = aggregator.get(session_id)
        except SessionNotFound:
            raise HTTPException(404, "Grabacion no encontrada")
        return {**listing, "session": session}

    # -- Offline queue --

    @router.get("/queue")
    def list_queue(status: str | None = None):
        return {
            "entries": [e.to_dict() for e in queue.list(status)],
            "stats": queue.stats(),
        }

    @router.get("/queue/stats")
    def queue_stats():
        return queue.stats()

    @router.post("/queue/retry-all")
    def retry_all():
        stats = queue.stats()
        spawn(queue.retry_all)
        return {
            "status": "retrying",
            "candidates": stats["pendingRecordings"] + stats["failedRecordings"],
        }

    @router.post("/queue/{entry_id}/retry")
    def retry_entry(entry_id: str):
        try:
            entry = queue.retry(entry_id)
        except QueueEntryNotFound:
            raise HTTPException(404, "Entrada no encontrada")
        except (RetryExhausted, InvalidQueueTransition) as e:
            raise HTTPException(409, str(e))
        except UploaderUnavailable as e:
            raise HTTPException(503, str(e))
        return entry.to_dict()

    @router.delete("/queue/{entry_id}")
    def delete_entry(entry_id: str):
        try:
            queue.delete(entry_id)
        except QueueEntryNotFound:
            raise HTTPException(404, "Entrada no encontrada")
        return {"deleted": True}

    @router.delete("/queue")
    def clear_queue():
        return {"deleted": queue.clear_all()}

    return router
