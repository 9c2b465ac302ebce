"""CLI shim -- delegates to insight_pipeline.cli.main().

Usage:
    python ingest.py --input-dir ./uploads
    python ingest.py --input-dir ./uploads --no-ai --summary-policy concatenate
"""

from insight_pipeline.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
