"""Sessions, lifecycle hooks and provider adapters for driving coding agents."""

__version__ = "0.1.0"