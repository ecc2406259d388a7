"""
DevPulse Client - Core Package
==============================

Configuration, records, the job API client and the tracking engine.
"""

from devpulse.core.config import settings

__all__ = ["settings"]
