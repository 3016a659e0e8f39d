"""
Error types shared by the stores, services and routes.
"""

from __future__ import annotations


class LabBackendError(Exception):
    """Base class for all errors raised by the lab backend."""


class InvalidInputError(LabBackendError):
    """A required field is missing or malformed (HTTP 400)."""


class StorageError(LabBackendError):
    """The persistence or blob layer failed (HTTP 500)."""


class StorageTimeoutError(StorageError):
    """A storage call exceeded its deadline. Callers may retry."""
