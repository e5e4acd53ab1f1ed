"""
Ingestion worker entry point

Commands:
- run     poll the database and process pending photos until SIGINT/SIGTERM
- ingest  upload local image files as new photos and process them now
"""
import argparse
import asyncio
import logging
import mimetypes
import signal
import uuid
from pathlib import Path
from typing import List, Optional

from facematch.backends import DeepFaceBackend
from facematch.config import (
    DATABASE_URL,
    FACE_DETECTOR_BACKEND,
    FACE_RECOGNITION_MODEL,
    STORAGE_BUCKET,
    SUPPORTED_FORMATS,
    WORKER_CONCURRENCY,
)
from facematch.database import build_engine, build_session_maker, close_db, create_tables, init_db
from facematch.face_service import FaceService
from facematch.pipeline import IngestionPipeline
from facematch.repository import PhotoRepository
from facematch.storage import GCSStorage

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def raw_key_for(photo_id: uuid.UUID, suffix: str, event_id: Optional[uuid.UUID] = None) -> str:
    scope = str(event_id) if event_id else "unassigned"
    return f"raw/{scope}/{photo_id}{suffix}"


async def ingest_files(
    pipeline: IngestionPipeline,
    paths: List[Path],
    uploader_id: str,
    event_id: Optional[uuid.UUID] = None
) -> int:
    """Upload and process local files; returns how many ended up ready."""
    ready = 0
    for path in paths:
        suffix = path.suffix.lower()
        if suffix not in SUPPORTED_FORMATS:
            logger.warning(f"Skipping {path}: unsupported format (supported: {', '.join(sorted(SUPPORTED_FORMATS))})")
            continue

        photo_id = uuid.uuid4()
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        raw_path = await pipeline.storage.put_object(
            raw_key_for(photo_id, suffix, event_id), path.read_bytes(), content_type=content_type
        )

        async with pipeline.session_maker() as session:
            await PhotoRepository.create(
                session,
                uploader_id=uploader_id,
                storage_path_raw=raw_path,
                event_id=event_id,
                original_name=path.name,
                photo_id=photo_id,
            )

        outcome = await pipeline.ingest(photo_id)
        logger.info(f"{path.name}: {outcome.status} ({outcome.faces_count} face(s))")
        if outcome.status == "ready":
            ready += 1
    return ready


async def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(prog="facematch-worker", description="Photo ingestion worker")
    parser.add_argument("--database-url", default=DATABASE_URL)
    parser.add_argument("--bucket", default=STORAGE_BUCKET)
    parser.add_argument("--concurrency", type=int, default=WORKER_CONCURRENCY)
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Process pending photos until stopped")
    ingest_parser = subparsers.add_parser("ingest", help="Upload and process local images")
    ingest_parser.add_argument("paths", nargs="+", type=Path)
    ingest_parser.add_argument("--uploader", default="cli")
    ingest_parser.add_argument("--event", type=uuid.UUID, default=None)
    args = parser.parse_args(argv)

    logger.info("Starting ingestion worker...")
    logger.info(f"Model: {FACE_RECOGNITION_MODEL}")
    logger.info(f"Detector: {FACE_DETECTOR_BACKEND}")

    engine = build_engine(args.database_url)
    await init_db(engine)
    await create_tables(engine)

    face_service = FaceService(DeepFaceBackend())
    storage = GCSStorage(args.bucket)
    pipeline = IngestionPipeline(
        face_service, storage, build_session_maker(engine), concurrency=args.concurrency
    )

    try:
        await face_service.initialize()

        if args.command == "ingest":
            ready = await ingest_files(pipeline, args.paths, args.uploader, args.event)
            logger.info(f"Ingested {ready}/{len(args.paths)} photo(s)")
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await pipeline.run_worker(stop_event)
    finally:
        pipeline.close()
        face_service.close()
        await storage.cleanup()
        await close_db(engine)
        logger.info("Shutting down ingestion worker...")


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
