"""
Telemetry Module
================

Observability for the adsync pipeline.

Components:
- sentry.py: Error tracking for isolated sync failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from adsync.telemetry import init_observability, capture_exception
"""

from adsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """Initialize observability tools; returns the status of each."""
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
