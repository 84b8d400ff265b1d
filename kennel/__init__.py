"""Kennel: worker-fleet dispatch for dogs, plugins and durable mail."""

__version__ = "0.1.0"
