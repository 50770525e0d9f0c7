"""Data models: device-side ORM records, client domain types and wire models."""
