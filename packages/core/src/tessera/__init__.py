"""Tessera: signed license credentials for offline-capable clients."""

__version__ = "0.1.0"
