"""Tidemark - forward-only SQL schema migrations with a durable ledger."""

__version__ = "0.1.0"
