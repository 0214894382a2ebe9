"""Facilitator-facing terminal interface."""

from .console import GraniteClient, ConsoleError, render_dashboard, main

__all__ = ["GraniteClient", "ConsoleError", "render_dashboard", "main"]
