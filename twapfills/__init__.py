"""twapfills: batch ingestion of perpetual-exchange trade fills."""

__version__ = "0.1.0"
