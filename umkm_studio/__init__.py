"""UMKM Studio backend: credit ledger, admission control and generation jobs."""

__version__ = "0.1.0"
