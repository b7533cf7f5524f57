from __future__ import annotations


class RainbowError(Exception):
    """Base class for engine errors."""


class ValidationError(RainbowError):
    """Input rejected before any state was touched."""


class ConflictError(RainbowError):
    """A concurrent writer changed the record; re-read and run the whole cycle again."""


class NotFoundError(RainbowError):
    pass


class StoreUnavailableError(RainbowError):
    """The record store could not be reached. Nothing was written."""
