"""deploykit - resilient container deployments with backup and rollback."""

__version__ = "0.1.0"
