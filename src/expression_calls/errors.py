"""Exceptions raised on broken input contracts.

Missing evidence and filter-merge failures are not errors: they are signalled
by returning None.
"""


class CallEngineError(Exception):
    """Base class for integration errors detected by the call engine."""


class OntologyCycleError(CallEngineError):
    """The ontology closure provider reported a cycle."""

    def __init__(self, message: str, path: list | None = None):
        super().__init__(message)
        self.path = path or []


class UnknownDataTypeError(CallEngineError):
    """Evidence references a data type that is unknown or not allowed for its call type."""


class InvalidEvidenceError(CallEngineError):
    """Evidence records that violate the merge contract."""
