"""Mail ingestion adapters."""
