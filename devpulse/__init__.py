"""
DevPulse Client
===============

Submits repository analyses and automated-fix jobs to the DevPulse service
and tracks their progress by polling.
"""

__version__ = "0.1.0"
