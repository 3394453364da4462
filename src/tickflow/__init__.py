"""Real-time tick ingestion and order-flow aggregation."""

__version__ = "0.1.0"
