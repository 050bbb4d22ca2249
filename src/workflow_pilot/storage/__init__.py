"""SQLite persistence for escalations and the decision audit log."""
