"""
DevPulse Client - Local API
===========================

Read-model HTTP and WebSocket surface over a running AnalysisTracker.
"""

from .app import create_app

__all__ = ["create_app"]
