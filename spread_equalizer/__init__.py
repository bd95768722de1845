"""Evict pods that violate their topology spread constraints."""

__version__ = "0.3.0"
