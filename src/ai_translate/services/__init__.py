"""Background jobs and metrics."""
