"""Deployment and certificate lifecycle orchestrator."""

__version__ = "0.1.0"
