"""
Telemetry Module
================

Error tracking for the leadflow backend.

Components:
- sentry.py: Error tracking and performance monitoring

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)

Usage:
    from leadflow.telemetry import init_sentry, capture_exception

    init_sentry()  # once, during create_app()
"""

from leadflow.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
