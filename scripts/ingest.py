#!/usr/bin/env python
"""Ingest local files or a web page into a user's knowledge base.

Usage:
    python scripts/ingest.py --email jane@example.com report.pdf scan.png
    python scripts/ingest.py --email jane@example.com --url https://example.com/docs
    python scripts/ingest.py --email jane@example.com --clear
"""
import argparse
import asyncio
import sys
from pathlib import Path
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docchat import config, db
from docchat.log import configure_logging
from docchat.rag.ingest import IngestPipeline
from docchat.rag.store_faiss import get_vector_store
from docchat.rag.loaders import DocumentLoadError, UnsupportedFileType, is_supported
from docchat.rag.web import WebLoadError
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, label: str):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {label[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Ingestion Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Sources processed:    {stats['sources_processed']}")
        print(f"  ❌ Sources failed:       {stats['sources_failed']}")
        print(f"  📝 Chunks stored:        {stats['chunks_created']}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  ⚡ Ingest rate:          {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if stats["sources_failed"] > 0:
            print(f"⚠️  Warning: {stats['sources_failed']} source(s) failed to ingest.")
            print("   Check logs for details.\n")

        if stats["sources_processed"] > 0:
            print(f"✅ Index ready at: {config.VECTOR_INDEX_PATH}")
            print(f"✅ Database at: {config.DB_PATH}\n")


async def ingest_files(pipeline: IngestPipeline, user_id: str, paths, progress: ProgressReporter) -> dict:
    stats = {"sources_processed": 0, "sources_failed": 0, "chunks_created": 0}

    for i, path in enumerate(paths, 1):
        progress.update(i, len(paths), path.name)

        if not path.is_file() or not is_supported(path):
            logger.warning("ingest_skipped", path=str(path))
            stats["sources_failed"] += 1
            continue

        try:
            chunks = await pipeline.ingest_file(path, user_id, source_name=path.name, remove_after=False)
            stats["sources_processed"] += 1
            stats["chunks_created"] += len(chunks)
        except (UnsupportedFileType, DocumentLoadError, RuntimeError) as e:
            logger.error("ingest_file_failed", path=str(path), error=str(e))
            stats["sources_failed"] += 1

    return stats


async def main():
    """Main entry point for ingest script."""
    parser = argparse.ArgumentParser(
        description="Ingest files or a web page into a DocChat knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest.py --email jane@example.com report.pdf
  python scripts/ingest.py --email jane@example.com --url https://example.com/docs
  python scripts/ingest.py --email jane@example.com --clear
        """,
    )

    parser.add_argument("paths", nargs="*", type=Path, help="PDF or image files to ingest")
    parser.add_argument("--email", required=True, help="Email of the account that owns the documents")
    parser.add_argument("--url", help="Web page to crawl (its listed links are loaded)")
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Remove the user's existing documents first",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()

    if not args.paths and not args.url and not args.clear:
        parser.error("give at least one file, --url or --clear")

    configure_logging("DEBUG" if args.verbose else "WARNING")
    db.init_database()

    user = db.get_user_by_email(args.email.strip().lower())
    if not user:
        print(f"\n❌ Error: no account registered for {args.email}\n")
        sys.exit(1)

    progress = ProgressReporter(verbose=args.verbose)
    pipeline = IngestPipeline()

    try:
        print("\n📋 Configuration:")
        print(f"   User:             {user['username']} <{user['email']}>")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   File chunks:      {config.PDF_CHUNK_SIZE} chars / {config.PDF_CHUNK_OVERLAP} overlap")
        print(f"   Web chunks:       {config.WEB_CHUNK_SIZE} chars / {config.WEB_CHUNK_OVERLAP} overlap")

        if args.clear:
            deleted = await pipeline.delete_user_documents(user["id"])
            print(f"\n🗑️  Removed {deleted} existing chunks")

        stats = {"sources_processed": 0, "sources_failed": 0, "chunks_created": 0}
        if not args.paths and not args.url:
            return

        progress.start("Ingesting Documents")

        if args.paths:
            stats = await ingest_files(pipeline, user["id"], args.paths, progress)

        if args.url:
            progress.update(1, 1, args.url)
            try:
                result = await pipeline.ingest_url(args.url, user["id"])
                stats["sources_processed"] += len(result["pages"])
                stats["chunks_created"] += len(result["chunks"])
            except WebLoadError as e:
                logger.error("ingest_url_failed", url=args.url, error=str(e))
                stats["sources_failed"] += 1

        progress.finish(stats)

        index_stats = (await get_vector_store()).get_stats()
        print(f"   Index now holds {index_stats['vector_count']} vectors ({index_stats['dimension']}-d)\n")

        if stats["sources_failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n⚠️  Ingestion cancelled by user.\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
