import logging
import sys
import threading

import uvicorn

import config
from db.database import Database
from recorder.capture import AudioCapture
from recorder.segmenter import SegmentRecorder
from server.app import create_app
from uploads.aggregator import SessionAggregator
from uploads.delivery import deliver_manifest
from uploads.gateway import UploadGateway
from uploads.queue import LocalPersistenceQueue

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("recvault")


def find_available_port(start: int, end: int) -> int:
    import socket
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((config.HOST, port))
                return port
            except OSError:
                continue
    raise RuntimeError(f"No se encontro un puerto disponible entre {start} y {end}")


def main():
    # Ensure data directories exist
    for d in [config.RECORDINGS_DIR, config.QUEUE_DIR]:
        d.mkdir(parents=True, exist_ok=True)

    try:
        port = find_available_port(config.PORT, 8800)
    except RuntimeError as e:
        logger.error(str(e))
        sys.exit(1)

    if port != config.PORT:
        logger.info("Puerto %d en uso, usando %d", config.PORT, port)
    config.PORT = port

    # Initialize components
    db = Database(config.DB_PATH)
    aggregator = SessionAggregator(db)
    gateway = UploadGateway() if config.UPLOAD_URL else None
    queue = LocalPersistenceQueue(
        db,
        config.QUEUE_DIR,
        uploader=gateway.upload_entry if gateway else None,
    )
    capture = AudioCapture()
    recorder = SegmentRecorder(
        capture,
        config.RECORDINGS_DIR,
        on_segment=lambda segment: aggregator.add_chunk(segment.session_id, segment),
    )

    if gateway and config.RETRY_QUEUE_ON_START:
        stats = queue.stats()
        pending = stats["pendingRecordings"] + stats["failedRecordings"]
        if pending:
            logger.info("Reintentando %d grabaciones offline en background...", pending)
            threading.Thread(target=queue.retry_all, daemon=True).start()

    app = create_app(recorder, aggregator, queue, gateway)

    server_config = uvicorn.Config(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level="warning",
    )
    server = uvicorn.Server(server_config)

    logger.info("RecVault iniciado en http://%s:%d (captura: %s)", config.HOST, config.PORT,
                ", ".join(capture.backend_names))
    try:
        server.run()
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Cerrando RecVault...")
        if recorder.is_recording():
            try:
                manifest = recorder.stop()
                aggregator.finalize(manifest["sessionId"], manifest["totalSegments"])
                # No network on the way out: keep the bundle in the offline queue
                deliver_manifest(manifest, None, queue, aggregator, cleanup=recorder.cleanup_files)
                logger.info("Grabacion en curso detenida y encolada: %s", manifest["sessionId"])
            except Exception as e:
                logger.error("No se pudo detener la grabacion al cerrar: %s", e)
        capture.terminate()


if __name__ == "__main__":
    main()
