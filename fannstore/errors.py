"""
errors.py
~~~~~~~~~

Typed failures raised by the model registry, network engine and
persistence layer.

Every error carries a ``kind`` string and a ``details`` dictionary naming the
offending model and parameters, so callers (and the REST API) never have to
parse a message to find out what went wrong.
"""

from typing import Any, Dict, Optional


class FannStoreError(Exception):
    """Base class for all fannstore failures."""

    kind = 'error'
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    @property
    def model(self) -> Optional[str]:
        """Name of the model the failure relates to, if any."""
        return self.details.get('model')

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the error to a JSON-serializable dictionary.

        Returns:
            Dictionary with ``error`` (the kind), ``message`` and ``details``
        """
        return {
            'error': self.kind,
            'message': self.message,
            'details': self.details
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, {self.details!r})"


class InvalidSpec(FannStoreError):
    """A model specification violates the topology or training invariants."""

    kind = 'invalid_spec'
    status_code = 400


class DuplicateName(FannStoreError):
    """A model with the same name is already registered."""

    kind = 'duplicate_name'
    status_code = 409


class NotFound(FannStoreError):
    """No model (or job) with the given name exists."""

    kind = 'not_found'
    status_code = 404


class Untrained(FannStoreError):
    """The model has no weights yet; it must be trained before running."""

    kind = 'untrained'
    status_code = 409


class EmptyDataset(FannStoreError):
    """Training was requested but no examples have been recorded."""

    kind = 'empty_dataset'
    status_code = 422


class DimensionMismatch(FannStoreError):
    """A vector's width disagrees with the model's layer sizes."""

    kind = 'dimension_mismatch'
    status_code = 400


class PersistenceFailure(FannStoreError):
    """The persistence adapter failed to read or write a record."""

    kind = 'persistence_failure'
    status_code = 503


class WeightFormatError(PersistenceFailure):
    """A weight blob is corrupt, truncated or of an unknown format."""

    kind = 'weight_format_error'


class Cancelled(FannStoreError):
    """The operation was cancelled or its deadline passed."""

    kind = 'cancelled'
    status_code = 499


class ModelBusy(FannStoreError):
    """Another training run currently holds the model."""

    kind = 'model_busy'
    status_code = 409
