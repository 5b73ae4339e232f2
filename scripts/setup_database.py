#!/usr/bin/env python3
"""Initialize the Neo4j schema used by the extraction sidecar.

Creates uniqueness constraints and the full-text indexes used for context
assembly. Safe to run repeatedly.

Usage:
    python scripts/setup_database.py
    python scripts/setup_database.py --config config/config.yaml

Environment variables:
    NEO4J_URI - Neo4j connection URI (default: bolt://localhost:7687)
    NEO4J_USER - Neo4j username (default: neo4j)
    NEO4J_PASSWORD - Neo4j password (default: sidecar2024)
"""

import argparse
import sys
from pathlib import Path

from loguru import logger
from neo4j.exceptions import Neo4jError, ServiceUnavailable

from sidecar.storage.neo4j_manager import Neo4jManager
from sidecar.utils.config import Config, load_config


def setup_neo4j(config: Config) -> bool:
    """Create constraints and indexes, then run a health check."""
    logger.info("Setting up Neo4j database...")

    manager = Neo4jManager(config.database)
    try:
        manager.connect()
        manager.create_schema()
        if manager.health_check():
            logger.success("Neo4j setup completed successfully")
            return True
        logger.error("Neo4j health check failed after setup")
        return False
    except (Neo4jError, ServiceUnavailable) as e:
        logger.error(f"Neo4j setup failed: {e}")
        return False
    finally:
        manager.close()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Initialize Neo4j constraints and full-text indexes.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    config = load_config(args.config)
    if not setup_neo4j(config):
        sys.exit(1)


if __name__ == "__main__":
    main()
