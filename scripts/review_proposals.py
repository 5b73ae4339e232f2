#!/usr/bin/env python3
"""CLI entrypoint for processing messages and reviewing entity proposals."""

from __future__ import annotations

from sidecar.curation.review_interface import run


def main() -> None:
    """Launch the review interface."""
    run()


if __name__ == "__main__":
    main()
