"""Forward-only SQL migrations for the object store."""
