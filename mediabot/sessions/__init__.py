"""Per-user conversation sessions (in-memory, single process)."""
