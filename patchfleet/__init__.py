"""patchfleet - concurrent workspace orchestration for autonomous coding agents."""

__version__ = "0.3.0"
