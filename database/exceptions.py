"""Database exceptions."""


class DatabaseError(Exception):
    """Base exception for database operations."""
    pass


class DatabaseSchemaError(DatabaseError):
    """Raised when schema loading or migration fails."""
    pass


class EventStoreError(DatabaseError):
    """Raised when events cannot be written to or read from the event table."""
    pass
