"""storesync: webhook ingestion and bulk synchronization for the store API."""

__version__ = "0.1.0"
