"""
OpenTelemetry availability detection for tenantshard.

OpenTelemetry is an optional dependency. This module is the single place
that attempts the import; every other module consults ``OTEL_AVAILABLE``.
"""

from __future__ import annotations

try:
    import opentelemetry.trace  # noqa: F401

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False


__all__ = ["OTEL_AVAILABLE"]
