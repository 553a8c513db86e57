"""Order placement, payment and lifecycle logic."""
