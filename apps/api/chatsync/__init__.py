"""Chat identity resolution and reconciliation service."""
