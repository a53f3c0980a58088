"""termpilot: agent run orchestration over live terminal sessions."""

__version__ = "0.4.0"
