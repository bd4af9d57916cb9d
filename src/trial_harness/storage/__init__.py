"""SQLite persistence for trial records."""
