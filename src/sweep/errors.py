"""Exceptions raised by sweep."""

from __future__ import annotations


class SweepError(Exception):
    """Base class for sweep errors."""


class ConfigurationError(SweepError, ValueError):
    """Raised when the coordinator or its inputs are misconfigured."""
