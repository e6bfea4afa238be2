"""deploygate: gated deployment pipeline orchestrator."""

from deploygate.version import __version__

__all__ = ["__version__"]
