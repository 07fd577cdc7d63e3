"""Exceptions shared across zpm modules."""
from __future__ import annotations


class ValidationError(Exception):
    """A pool plan or vdev layout is not well-formed.

    Always raised before any external command runs.
    """


class NotFoundError(Exception):
    """A referenced pool, dataset, device or backup does not exist."""


class LockHeldError(Exception):
    """Another zpm process holds the lock for this dataset."""
