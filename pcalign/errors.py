"""Exceptions raised by the registration core.

All of them are recoverable: they describe a problem with the input data or
configuration of a single call and never leave shared state behind.
"""


class PCAlignError(Exception):
    """Base class for all registration errors."""


class EmptyIndex(PCAlignError, LookupError):
    """A query was issued against a spatial index holding no points."""


# A nearest query on an empty index; kept as a separate name for callers
# that expect it, but the two conditions are the same one.
NotFound = EmptyIndex


class DegenerateCorrespondences(PCAlignError):
    """The matched pairs do not determine a unique rigid transform."""


class NoCorrespondences(PCAlignError):
    """Every candidate correspondence was rejected."""


class InvalidConfiguration(PCAlignError, ValueError):
    """A configuration value is out of its allowed range."""
