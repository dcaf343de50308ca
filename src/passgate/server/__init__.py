"""Passgate HTTP server."""

from .app import build_application, build_orchestrator, create_app, run_server

__all__ = ["build_application", "build_orchestrator", "create_app", "run_server"]
