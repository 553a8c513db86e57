"""HTTP surface of the order service."""
