"""Durable orchestration state."""

from patchfleet.state.store import StateStore

__all__ = ["StateStore"]
