"""CLI entrypoint for running tidemark as a module."""

from tidemark.cli import cli
from tidemark.logging import setup_logging

if __name__ == "__main__":
    setup_logging()
    cli()
