"""Coffee machine telemetry ingestion and alerting."""

__version__ = "0.1.0"
