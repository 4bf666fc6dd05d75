"""Launchpad Indexer - multi-chain token ledger and market data pipeline."""

__version__ = "0.1.0"
