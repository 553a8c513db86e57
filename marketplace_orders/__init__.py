"""Order placement and order lifecycle core for the marketplace backend."""

__version__ = "0.1.0"
