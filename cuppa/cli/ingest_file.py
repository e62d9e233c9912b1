# =============================================
# File: cuppa/cli/ingest_file.py
# Purpose: CLI entrypoint to bulk-load interaction events through batch ingestion.
# Usage:
#   DB_URL=sqlite:///cuppa.db python -m cuppa.cli.ingest_file --file events.jsonl --batch-size 500
# =============================================
from __future__ import annotations
import argparse
import json
import sys
from typing import Any, List

from cuppa.services.container import build_container


def read_events(path: str) -> List[Any]:
    """A JSON array, {"events": [...]}, or one JSON object per line."""
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    if isinstance(data, dict):
        return data["events"] if "events" in data else [data]
    return data


def main(argv=None):
    ap = argparse.ArgumentParser(description="Ingest interaction events from a JSON/JSONL file.")
    ap.add_argument("--file", required=True, help="Path to a JSON array or JSONL file of events")
    ap.add_argument("--batch-size", type=int, default=None, help="Chunk size (default: INGEST_BATCH_SIZE or 1000)")
    ap.add_argument("--no-skip-duplicates", action="store_true", help="Write events even if already stored")
    args = ap.parse_args(argv)

    try:
        events = read_events(args.file)
    except (OSError, ValueError) as e:
        print(f"[WARN] Could not read {args.file}: {e}", file=sys.stderr)
        sys.exit(1)

    container = build_container()
    try:
        result = container.ingestion.ingest_batch(
            events,
            batch_size=args.batch_size,
            skip_duplicates=not args.no_skip_duplicates,
            on_progress=lambda p: print(
                f"  chunk {p['chunk']}: processed={p['processed']} failed={p['failed']} duplicates={p['duplicates']}"
            ),
        )
    finally:
        container.close()

    for err in result.errors[:20]:
        print(f"[WARN] #{err.index}: {err.error}", file=sys.stderr)
    if result.aborted:
        print("[WARN] Event store became unavailable; remaining events were skipped.", file=sys.stderr)
        sys.exit(2)

    print(
        f"[OK] Ingested {result.processed} of {len(events)} events "
        f"({result.failed} failed, {result.duplicates} duplicates)."
    )


if __name__ == "__main__":
    main()
