"""Agent Relay: dispatch prompts to command-line AI agents and track them as tasks."""

__version__ = "0.1.0"

__all__ = ["__version__"]
