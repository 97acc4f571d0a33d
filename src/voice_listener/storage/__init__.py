"""SQLite storage primitives shared by the task store."""
