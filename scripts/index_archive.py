#!/usr/bin/env python3
"""
CLI script for ingesting a Lovdata archive into Qdrant.

Every member of the archive is replaced: existing documents and chunks of the
archive are deleted before the new ones are written.

Usage:
    # Ingest a zip archive
    python scripts/index_archive.py data/gjeldende-lover.zip

    # Ingest an extracted directory under an explicit archive name
    python scripts/index_archive.py data/lover/ --name gjeldende-lover.zip

    # Use a different collection prefix
    python scripts/index_archive.py data/gjeldende-lover.zip --prefix test
"""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

# Add project root to path
root_dir = Path(__file__).parent.parent
sys.path.insert(0, str(root_dir / "src"))

from dotenv import load_dotenv
load_dotenv(root_dir / ".env")

from lovsok.config import get_settings
from lovsok.embeddings import EmbeddingService
from lovsok.ingest import ArchiveIngestor, iter_archive_entries
from lovsok.store import ArchiveStore
from lovsok.types import IngestionError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def ingest(path: Path, name: str) -> int:
    settings = get_settings()
    store = ArchiveStore(settings)
    try:
        await store.ensure_collections()
        ingestor = ArchiveIngestor(store, EmbeddingService(settings), settings)
        start_time = time.time()
        result = await ingestor.ingest(name, iter_archive_entries(path))
        elapsed = time.time() - start_time
    finally:
        await store.close()

    logger.info("")
    logger.info("=" * 60)
    logger.info("Ingestion complete!")
    logger.info("=" * 60)
    logger.info(f"  Archive: {result.archive_filename}")
    logger.info(f"  Documents: {result.documents}")
    logger.info(f"  Chunks: {result.chunks}")
    logger.info(f"  Collections: {settings.qdrant_collection_prefix}_*")
    logger.info(f"  Time: {elapsed:.1f}s")
    if result.skipped_members:
        logger.warning(f"  Skipped members ({len(result.skipped_members)})")
    logger.info("=" * 60)
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Ingest a Lovdata archive (zip file or directory) into Qdrant."
    )
    parser.add_argument(
        "path",
        type=Path,
        help="Path to a .zip archive or an extracted directory",
    )
    parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Archive name to store (default: the file or directory name)",
    )
    parser.add_argument(
        "--prefix",
        type=str,
        default=None,
        help="Override the Qdrant collection prefix (default: from settings)",
    )
    args = parser.parse_args()

    if not args.path.exists():
        logger.error(f"Path does not exist: {args.path}")
        sys.exit(1)

    if args.prefix:
        get_settings().qdrant_collection_prefix = args.prefix

    name = args.name or args.path.name
    try:
        sys.exit(asyncio.run(ingest(args.path, name)))
    except (ValueError, ConnectionError, IngestionError) as e:
        logger.error(f"Failed to ingest {name}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
