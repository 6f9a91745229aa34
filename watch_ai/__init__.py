"""Watch AI - tool-calling coding agent for a local workspace."""

__version__ = "0.1.0"

from watch_ai.config import Config

__all__ = ["Config", "__version__"]
