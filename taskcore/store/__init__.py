"""Per-task message logs, persistence and accounting."""
