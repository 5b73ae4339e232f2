#!/usr/bin/env python3
"""Batch entity extraction over a file of messages.

Each non-empty line of the input file is treated as one message. Lines that
parse as JSON objects may carry ``message``, ``user_id`` and ``source`` keys
to override the command-line defaults.

Usage:
    python scripts/process_messages.py messages.txt --project proj-1 --user u-1
    python scripts/process_messages.py export.jsonl --project proj-1 --user u-1 --source slack
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

from loguru import logger

from sidecar.pipeline.extraction_pipeline import ExtractionPipeline
from sidecar.storage.neo4j_manager import Neo4jManager
from sidecar.utils.config import load_config
from sidecar.utils.log_config import setup_logging


def read_messages(path: Path) -> List[Dict[str, Any]]:
    """Read one message per line; JSON object lines keep their extra keys."""
    records: List[Dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and "message" in data:
            records.append(data)
        else:
            records.append({"message": line})
    return records


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run entity extraction over a file of messages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("input", type=Path, help="Text or JSONL file with one message per line")
    parser.add_argument("--project", required=True, help="Project id")
    parser.add_argument("--user", required=True, help="Default submitting user id")
    parser.add_argument("--source", default="chat", help="Default source type")
    parser.add_argument("--provider", default=None, help="Override the configured provider")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config.logging, verbose=args.verbose)

    if not args.input.exists():
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)
    records = read_messages(args.input)
    logger.info(f"Loaded {len(records)} messages from {args.input}")

    store = Neo4jManager(config.database)
    store.connect()
    try:
        pipeline = ExtractionPipeline(config, store)
        results = []
        # Per-record user/source overrides mean one call per message.
        for record in records:
            results.extend(
                pipeline.process_messages(
                    args.project,
                    record.get("user_id") or args.user,
                    [record["message"]],
                    record.get("source") or args.source,
                    args.provider,
                )
            )
    finally:
        store.close()

    failed = [r for r in results if not r.success]
    auto_created = sum(r.processing.summary.auto_created for r in results if r.processing)
    proposals = sum(r.processing.summary.proposals for r in results if r.processing)
    cost = sum(r.estimated_cost for r in results)
    logger.info(
        f"Done: {len(results) - len(failed)}/{len(results)} messages, "
        f"{auto_created} auto-created, {proposals} proposals, cost ${cost:.4f}"
    )
    for result in failed:
        logger.warning(f"Failed message: {result.error_type}: {result.error}")
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
