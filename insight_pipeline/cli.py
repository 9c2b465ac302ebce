"""CLI entrypoint for the document -> chunks -> insights pipeline.

Usage:
    python -m insight_pipeline --input-dir ./uploads
    python -m insight_pipeline --input-dir ./uploads --no-ai
    python -m insight_pipeline --input-dir ./uploads --capability-url http://localhost:11434/v1 --model llama3.1
    python -m insight_pipeline --input-dir ./uploads --embed --qdrant-path qdrant_data
    python -m insight_pipeline --input-dir ./uploads --force-reprocess
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    output_dir: Path,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(threadName)s | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    resolved_log_file = log_file
    if resolved_log_file is None and detailed_logging:
        resolved_log_file = output_dir / "pipeline.log"

    if resolved_log_file is not None:
        resolved_log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            resolved_log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("qdrant_client").setLevel(logging.WARNING)
    logging.getLogger("docling").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    cpu_count = max(1, os.cpu_count() or 1)

    parser = argparse.ArgumentParser(
        description="Document -> chunks -> themes/quotes/insights pipeline"
    )
    parser.add_argument(
        "--input-dir",
        type=Path,
        required=True,
        help="Directory scanned recursively for .pdf, .txt and .md files",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Output directory for results, manifest and state (default: output/)",
    )
    parser.add_argument(
        "--capability-url",
        default=None,
        help="OpenAI-compatible base URL (default: $INSIGHT_LLM_BASE_URL)",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Chat model name (default: $INSIGHT_LLM_MODEL)",
    )
    parser.add_argument(
        "--no-ai",
        action="store_true",
        help="Skip the language capability and use rule-based analysis only",
    )
    parser.add_argument(
        "--summary-policy",
        choices=["concatenate", "regenerate"],
        default=None,
        help="Join chunk summaries or regenerate one from the full text",
    )
    parser.add_argument(
        "--max-concurrent-jobs",
        type=int,
        default=None,
        help="Jobs processed in parallel (default: $INSIGHT_MAX_CONCURRENT_JOBS or 3)",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Maximum chunk size in characters (default: 2000)",
    )
    parser.add_argument(
        "--chunk-overlap",
        type=int,
        default=None,
        help="Overlap between consecutive chunks in characters (default: 200)",
    )
    parser.add_argument(
        "--embed",
        action="store_true",
        help="Embed chunks with FastEmbed and store them in Qdrant",
    )
    parser.add_argument(
        "--qdrant-path",
        type=Path,
        default=Path("qdrant_data"),
        help="Qdrant storage path (default: qdrant_data/)",
    )
    parser.add_argument(
        "--rebuild-index",
        action="store_true",
        help="Drop and recreate the Qdrant collection before upserting",
    )
    parser.add_argument(
        "--num-threads",
        type=int,
        default=min(24, max(4, cpu_count)),
        help="Docling internal thread count",
    )
    parser.add_argument(
        "--disable-ocr",
        action="store_true",
        help="Disable OCR for faster conversion on text PDFs",
    )
    parser.add_argument(
        "--force-reprocess",
        action="store_true",
        help="Process every file even if unchanged in saved pipeline state",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (thread, file/line, rotating log file)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=(
            "Optional log file path "
            "(default: <output-dir>/pipeline.log in detailed mode)"
        ),
    )
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Any:
    """Environment settings with command-line overrides applied."""
    from .config import get_settings

    settings = get_settings()

    chunking_changes = {
        key: value
        for key, value in (
            ("max_chunk_size", args.chunk_size),
            ("overlap_size", args.chunk_overlap),
        )
        if value is not None
    }
    capability_changes = {
        key: value
        for key, value in (("base_url", args.capability_url), ("model", args.model))
        if value
    }
    scheduler_changes = {}
    if args.max_concurrent_jobs is not None:
        scheduler_changes["max_concurrent_jobs"] = max(1, args.max_concurrent_jobs)

    return dataclasses.replace(
        settings,
        chunking=dataclasses.replace(settings.chunking, **chunking_changes),
        capability=dataclasses.replace(settings.capability, **capability_changes),
        scheduler=dataclasses.replace(settings.scheduler, **scheduler_changes),
        summary_policy=args.summary_policy or settings.summary_policy,
    )


def main(argv: list[str] | None = None) -> int:
    """Run the pipeline over every supported file in ``--input-dir``."""
    from tqdm import tqdm

    from .conversion import create_converter, document_id_for
    from .errors import QueueFullError
    from .models import DocumentStatus, JobStatus, JobType
    from .persistence import JsonDirectoryStore
    from .service import build_service
    from .utils import (
        discover_documents,
        file_fingerprint,
        is_unchanged_file,
        load_pipeline_state,
        save_pipeline_state,
    )

    args = parse_args(argv)
    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        output_dir=args.output_dir,
        log_file=args.log_file,
    )
    overall_t0 = time.perf_counter()
    settings = settings_from_args(args)
    log.info(
        "Settings: chunk=%s/%s max_jobs=%s summary=%s ai=%s",
        settings.chunking.max_chunk_size,
        settings.chunking.overlap_size,
        settings.scheduler.max_concurrent_jobs,
        settings.summary_policy,
        settings.capability.enabled and not args.no_ai,
    )

    # --- Step 1: Discover input files ---
    files = discover_documents(args.input_dir)
    log.info("Total files discovered: %s", len(files))
    if not files:
        log.warning("No supported files found in %s. Exiting.", args.input_dir)
        return 0

    store = JsonDirectoryStore(args.output_dir)

    # --- Resume check: skip unchanged files ---
    state = load_pipeline_state(args.output_dir)
    state_files: dict[str, dict[str, Any]] = state.setdefault("files", {})
    to_process: list[Path] = []
    skipped_unchanged = 0
    for path in files:
        previous = state_files.get(str(path.resolve()))
        result_file = store.document_path(document_id_for(path))
        if (
            not args.force_reprocess
            and result_file.exists()
            and is_unchanged_file(path, previous)
        ):
            skipped_unchanged += 1
            continue
        to_process.append(path)
    log.info(
        "Resume check: %s unchanged skipped, %s queued for processing",
        skipped_unchanged,
        len(to_process),
    )

    # --- Step 2: Submit and process ---
    vector_index = None
    if args.embed and to_process:
        from .vectorstores import QdrantChunkIndex

        vector_index = QdrantChunkIndex(args.qdrant_path, recreate=args.rebuild_index)

    converter = None
    if any(path.suffix.lower() == ".pdf" for path in to_process):
        log.info("Initializing Docling converter...")
        converter, ocr_engine = create_converter(
            num_threads=max(1, args.num_threads),
            enable_ocr=not args.disable_ocr,
        )
        log.info("Converter OCR profile: %s", ocr_engine)

    service = build_service(
        settings,
        store,
        use_capability=not args.no_ai,
        embed=args.embed,
        vector_index=vector_index,
        converter_factory=lambda: converter,
    )

    progress = tqdm(total=len(to_process), desc="Documents")
    progress_lock = threading.Lock()

    def _on_finished(snapshot: Any) -> None:
        # A document is done once its analysis ran or its extraction failed.
        if snapshot.job_type is JobType.ANALYSIS or (
            snapshot.job_type is JobType.EXTRACTION
            and snapshot.status is JobStatus.FAILED
        ):
            with progress_lock:
                progress.update(1)

    service.scheduler.add_listener(_on_finished)
    step_t0 = time.perf_counter()
    for path in to_process:
        while True:
            try:
                service.submit_file(path)
                break
            except QueueFullError:
                log.debug("Queue full; waiting to submit %s", path.name)
                service.scheduler.wait_for_capacity()
    service.join()
    progress.close()
    service.shutdown()
    if vector_index is not None:
        log.info("Qdrant collection: %s vectors stored", vector_index.count())
        vector_index.close()
    log.info("Processing completed in %.2fs", time.perf_counter() - step_t0)

    # --- Step 3: Save pipeline state ---
    current_keys = {str(path.resolve()) for path in files}
    for key in list(state_files):
        if key not in current_keys:
            state_files.pop(key, None)

    processed_at = datetime.now(timezone.utc).isoformat()
    succeeded: list[Path] = []
    failed: list[tuple[Path, str]] = []
    degraded = 0
    for path in to_process:
        document = store.get_document(document_id_for(path))
        completed = document is not None and document.status is DocumentStatus.COMPLETED
        entry: dict[str, Any] = {
            "filename": path.name,
            "status": "completed" if completed else "failed",
            "processed_at": processed_at,
        }
        if completed:
            succeeded.append(path)
            entry["provenance"] = document.provenance.value if document.provenance else None
            if entry["provenance"] == "fallback":
                degraded += 1
        else:
            error = (document.error if document else None) or "unknown"
            failed.append((path, error))
            entry["error"] = error[:500]
        try:
            entry.update(file_fingerprint(path))
        except OSError:
            pass
        state_files[str(path.resolve())] = entry

    state_path = save_pipeline_state(args.output_dir, state)

    # --- Summary ---
    metrics = service.metrics()
    log.info("=" * 60)
    log.info("PIPELINE COMPLETE")
    log.info("  Files discovered: %s", len(files))
    log.info("  Processed now:    %s", len(to_process))
    log.info("  Skipped cached:   %s", skipped_unchanged)
    log.info("  Succeeded:        %s (%s fallback)", len(succeeded), degraded)
    log.info("  Failed:           %s", len(failed))
    log.info("  Avg job time:     %.0fms", metrics["avg_processing_time"])
    log.info("  Output dir:       %s", args.output_dir)
    log.info("  State:            %s", state_path)
    log.info("  Total runtime:    %.1fs", time.perf_counter() - overall_t0)
    if failed:
        log.warning("Failed files:")
        for path, error in failed:
            log.warning("  - %s: %s", path.name, error[:200])
    return 1 if failed else 0
