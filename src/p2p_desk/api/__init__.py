"""Read-only query API over the durable event log."""
