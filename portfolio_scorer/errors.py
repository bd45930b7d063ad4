"""
Exception taxonomy for the scoring pipeline.

Expected per-user outcomes (no criteria, no assets) are NOT raised across
the user boundary: the batch services return them as failed result records
tagged with a ``FailureKind``. The exceptions below are for conditions the
caller must see.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Category of a per-user failure recorded in a result record."""

    PRECONDITION = "precondition"
    PROVIDER     = "provider"
    PERSISTENCE  = "persistence"


class PortfolioScorerError(Exception):
    """Base class for all package errors."""


class PreconditionFailure(PortfolioScorerError):
    """A user cannot be processed (no active criteria, no assets, ...)."""


class ProviderFailure(PortfolioScorerError):
    """A market data provider call failed or returned unusable data."""


class ProviderNotConfiguredError(ProviderFailure):
    """A provider required in production has no configuration.

    Raised before any user is processed.
    """


class PersistenceFailure(PortfolioScorerError):
    """A database write for one user or batch failed."""


class EventOrderingError(PortfolioScorerError):
    """An event append would break the per-correlation event order."""


class CacheFailure(PortfolioScorerError):
    """The external cache rejected or failed a write. Never fatal."""
