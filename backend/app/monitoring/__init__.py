"""Monitoring helpers and metric registry for the signaling backend."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
