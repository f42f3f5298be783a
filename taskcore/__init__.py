"""Task orchestration engine for an autonomous coding agent."""

__version__ = "0.1.0"
