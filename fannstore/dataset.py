"""
dataset.py
~~~~~~~~~~

Append-only training example collections, one per model.
"""

import logging
from typing import Callable, Iterator, Optional

from .errors import PersistenceFailure
from .models import ModelSpec, TrainingExample
from .persistence import PersistenceAdapter

logger = logging.getLogger(__name__)


class ExampleSequence:
    """
    Lazy, restartable view over a model's examples.

    Nothing is read until the sequence is iterated, and every iteration
    queries the adapter again, so examples appended in the meantime show up.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        model_id: str,
        timeout: Optional[float] = None
    ):
        self._adapter = adapter
        self._model_id = model_id
        self._timeout = timeout

    def __iter__(self) -> Iterator[TrainingExample]:
        for document in self._adapter.iter_examples(self._model_id, timeout=self._timeout):
            try:
                yield TrainingExample.from_dict(document)
            except (KeyError, TypeError) as e:
                raise PersistenceFailure(
                    f"Malformed example document: {e}",
                    operation='iter_examples', model_id=self._model_id
                ) from e

    def __len__(self) -> int:
        return self._adapter.count_examples(self._model_id, timeout=self._timeout)

    def __bool__(self) -> bool:
        return len(self) > 0


class DatasetStore:
    """
    Records and replays training examples.

    Args:
        adapter: Persistence adapter holding the examples
        spec_lookup: Resolves a model name to its current spec, raising
            NotFound for unknown names
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        spec_lookup: Callable[[str], ModelSpec]
    ):
        self._adapter = adapter
        self._spec_lookup = spec_lookup

    def append(
        self,
        name: str,
        example: TrainingExample,
        timeout: Optional[float] = None
    ) -> TrainingExample:
        """
        Validate an example against the model's spec and store it.

        Raises:
            NotFound: If the model is unknown
            DimensionMismatch: If the vector widths are wrong
            PersistenceFailure: If the write fails
        """
        spec = self._spec_lookup(name)
        example.check_against(spec)
        self._adapter.append_example(spec.model_id, example.to_dict(), timeout=timeout)
        logger.debug(f"Appended example to '{name}'")
        return example

    def all(self, name: str, timeout: Optional[float] = None) -> ExampleSequence:
        """All examples of a model, in insertion order."""
        spec = self._spec_lookup(name)
        return ExampleSequence(self._adapter, spec.model_id, timeout)

    def count(self, name: str, timeout: Optional[float] = None) -> int:
        spec = self._spec_lookup(name)
        return self._adapter.count_examples(spec.model_id, timeout=timeout)

    def clear(self, name: str, timeout: Optional[float] = None) -> int:
        """Remove every example of a model. Safe to call repeatedly."""
        spec = self._spec_lookup(name)
        return self._adapter.clear_examples(spec.model_id, timeout=timeout)

