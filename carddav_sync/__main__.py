"""
Entry point for running carddav_sync as a module.

Usage:
    python -m carddav_sync --help
    python -m carddav_sync pull --profile work
    python -m carddav_sync run --initial-sync
"""

from carddav_sync.cli import cli

if __name__ == "__main__":
    cli()
