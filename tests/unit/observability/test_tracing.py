"""
Unit tests for OpenTelemetry availability detection.
"""

from __future__ import annotations

import importlib.util

from tenantshard.observability import OTEL_AVAILABLE, NullTracer, create_tracer


class TestOTELAvailable:
    """Tests for OTEL_AVAILABLE constant."""

    def test_is_boolean(self):
        assert isinstance(OTEL_AVAILABLE, bool)

    def test_reflects_import(self):
        """OTEL_AVAILABLE is True exactly when opentelemetry can be imported."""
        assert OTEL_AVAILABLE is (importlib.util.find_spec("opentelemetry") is not None)

    def test_components_fall_back_when_unavailable(self, monkeypatch):
        """create_tracer consults the flag before building an OpenTelemetry tracer."""
        monkeypatch.setattr("tenantshard.observability.tracer.OTEL_AVAILABLE", False)
        assert isinstance(create_tracer("tenantshard.test", True), NullTracer)
