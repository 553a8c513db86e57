"""Background workers: outbox publishing and order recovery."""
