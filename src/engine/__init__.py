"""Dispatch engine facade."""

from .dispatch_engine import DispatchEngine

__all__ = ["DispatchEngine"]
