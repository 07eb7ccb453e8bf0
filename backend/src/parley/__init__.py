"""Realtime signaling core and client library for the parley chat backend."""

__version__ = "0.1.0"
