"""Issue Hunter: track GitHub issues and hand them to a coding agent."""

__version__ = "0.1.0"
