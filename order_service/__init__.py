"""Order lifecycle service: order creation, payment initiation and gateway reconciliation."""

__version__ = "0.1.0"
