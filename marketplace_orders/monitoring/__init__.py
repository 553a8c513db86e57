"""Metrics, health probes and logging setup for the order service."""
