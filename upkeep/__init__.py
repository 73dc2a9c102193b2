"""upkeep — transactional file updates with drift tracking and backups."""

__version__ = "0.1.0"
