"""Queue job models and the Postgres job queue."""
