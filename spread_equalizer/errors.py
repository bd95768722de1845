"""Exceptions raised by spread_equalizer."""


class SpreadEqualizerError(Exception):
    """Base class for all errors raised by this package."""


class SelectorError(SpreadEqualizerError, ValueError):
    """A label selector could not be parsed."""


class PolicyError(SpreadEqualizerError, ValueError):
    """The policy document is malformed or violates a constraint."""


class ClusterStateError(SpreadEqualizerError):
    """Listing nodes, namespaces or pods from the API server failed."""

    def __init__(self, message: str, *, namespace=None):
        super().__init__(message)
        self.namespace = namespace


class EvictionError(SpreadEqualizerError):
    """The eviction API rejected a request for reasons other than policy."""

    def __init__(self, message: str, *, namespace: str, name: str):
        super().__init__(message)
        self.namespace = namespace
        self.name = name
