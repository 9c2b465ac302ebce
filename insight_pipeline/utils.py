"""Cross-cutting helpers: constants, hashing, state and manifest I/O."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MB = 1024 * 1024

EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
EMBEDDING_DIM = 384
COLLECTION_NAME = "document_chunks"
STATE_FILE_NAME = "pipeline_state.json"
MANIFEST_FILE_NAME = "document_manifest.json"
SUPPORTED_SUFFIXES = (".pdf", ".txt", ".md")

DEFAULT_MAX_CHUNK_SIZE = 2000
DEFAULT_OVERLAP_SIZE = 200
DEFAULT_MIN_CHUNK_SIZE = 50

ANALYSIS_BATCH_SIZE = 3
QUOTE_LIMIT = 20
INSIGHT_LIMIT = 15
KEYWORD_LIMIT = 30
SUMMARY_CONTEXT_CHARS = 8000


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def content_hash(*parts: str | None) -> str:
    """Stable short hash over *parts* for ids and cache keys."""
    digest = hashlib.sha1()
    for part in parts:
        digest.update((part or "").encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()[:16]


def estimate_payload_size(payload: Any) -> int:
    """Rough in-memory size of *payload*: two bytes per JSON character."""
    try:
        encoded = json.dumps(payload, default=str)
    except (TypeError, ValueError):
        encoded = repr(payload)
    return len(encoded) * 2


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def discover_documents(folder: Path) -> list[Path]:
    """Recursively find supported documents under *folder*, sorted by name."""
    if not folder.exists():
        return []
    return sorted(
        path
        for path in folder.rglob("*")
        if path.is_file() and path.suffix.lower() in SUPPORTED_SUFFIXES
    )


def _state_path(output_dir: Path) -> Path:
    return output_dir / STATE_FILE_NAME


def file_fingerprint(path: Path) -> dict[str, int]:
    """Return a cheap fingerprint for local change detection."""
    stat = path.stat()
    return {
        "size": stat.st_size,
        "mtime_ns": stat.st_mtime_ns,
    }


def is_unchanged_file(path: Path, previous: dict[str, Any] | None) -> bool:
    """Check whether *path* matches a previous completed state entry."""
    if not previous or previous.get("status") != "completed":
        return False
    current = file_fingerprint(path)
    return (
        previous.get("size") == current["size"]
        and previous.get("mtime_ns") == current["mtime_ns"]
    )


def load_pipeline_state(output_dir: Path) -> dict[str, Any]:
    """Load persistent pipeline state from ``pipeline_state.json``."""
    path = _state_path(output_dir)
    if not path.exists():
        return {"files": {}}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            state = json.load(fh)
    except (json.JSONDecodeError, OSError, ValueError):
        return {"files": {}}

    if not isinstance(state, dict):
        return {"files": {}}

    files = state.get("files")
    if not isinstance(files, dict):
        state["files"] = {}
    return state


def save_pipeline_state(output_dir: Path, state: dict[str, Any]) -> Path:
    """Persist pipeline state and return the state file path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = _state_path(output_dir)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(state, fh, indent=2, ensure_ascii=False, default=str)
    return path


# ---------------------------------------------------------------------------
# Manifest I/O
# ---------------------------------------------------------------------------


def load_manifest(output_dir: Path) -> dict[str, dict[str, Any]]:
    """Read ``document_manifest.json`` keyed by document id."""
    manifest_path = output_dir / MANIFEST_FILE_NAME
    if not manifest_path.exists():
        return {}
    try:
        with open(manifest_path, "r", encoding="utf-8") as fh:
            existing = json.load(fh)
    except (json.JSONDecodeError, OSError, ValueError):
        return {}
    if not isinstance(existing, list):
        return {}
    return {
        str(item["document_id"]): item
        for item in existing
        if isinstance(item, dict) and item.get("document_id")
    }


def save_manifest(output_dir: Path, entries: dict[str, dict[str, Any]]) -> Path:
    """Write ``document_manifest.json`` sorted by title and id."""
    output_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = output_dir / MANIFEST_FILE_NAME
    manifest = sorted(
        entries.values(),
        key=lambda item: (str(item.get("title", "")), str(item.get("document_id", ""))),
    )
    with open(manifest_path, "w", encoding="utf-8") as fh:
        json.dump(manifest, fh, indent=2, ensure_ascii=False, default=str)
    return manifest_path
