"""push-validator: lifecycle manager for a single Push Chain validator node."""

__version__ = "1.0.0"
