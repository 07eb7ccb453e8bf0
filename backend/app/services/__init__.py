"""Application service helpers."""

from .directory import ChatDirectory

__all__ = ["ChatDirectory"]
