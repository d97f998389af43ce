"""
registry.py
~~~~~~~~~~~

The model registry: named models, their lifecycle and persistence.

A registry is constructed explicitly around a persistence adapter and keeps
an in-memory cache of every model. Operations on different models run in
parallel; training, re-specification and removal of the same model are
serialized by a per-model lock. Trained weights are persisted before they
become visible, so a failed or cancelled run never exposes partial weights.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import network
from .cancellation import CancellationToken
from .codec import decode_weights, encode_weights
from .dataset import DatasetStore, ExampleSequence
from .errors import (
    DuplicateName,
    EmptyDataset,
    InvalidSpec,
    ModelBusy,
    NotFound,
    PersistenceFailure,
    Untrained,
    WeightFormatError,
)
from .models import Model, ModelSpec, ModelState, TrainingExample
from .network import TrainingOptions
from .persistence import DEFAULT_TIMEOUT, PersistenceAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryConfig:
    """
    Registry behaviour.

    Attributes:
        training: Hyper-parameters passed to the training loop
        keep_best: Keep the previous weights when a new run ends with a
            higher error (default: always overwrite)
        warm_start: Continue from the current weights instead of a fresh
            initialization
        io_timeout: Upper bound in seconds for each persistence call
    """
    training: TrainingOptions = field(default_factory=TrainingOptions)
    keep_best: bool = False
    warm_start: bool = False
    io_timeout: float = DEFAULT_TIMEOUT


class ModelRegistry:
    """Maps model names to models and orchestrates their persistence."""

    def __init__(self, adapter: PersistenceAdapter, config: Optional[RegistryConfig] = None):
        self.adapter = adapter
        self.config = config or RegistryConfig()
        self.datasets = DatasetStore(adapter, self.get_spec)

        self._models: Dict[str, Model] = {}
        self._model_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        adapter: PersistenceAdapter,
        config: Optional[RegistryConfig] = None
    ) -> 'ModelRegistry':
        """
        Build a registry from every model stored in the adapter.

        Corrupt spec records are skipped and corrupt weight blobs leave
        their model untrained; both are logged as warnings.

        Raises:
            PersistenceFailure: If the adapter itself cannot be read
        """
        registry = cls(adapter, config)
        registry.reload()
        return registry

    def reload(self) -> int:
        """
        Replace the in-memory cache with the adapter's contents.

        Returns:
            int: Number of models loaded
        """
        timeout = self.config.io_timeout
        models: Dict[str, Model] = {}
        skipped = 0

        for document in self.adapter.get_all_specs(timeout=timeout):
            if 'corrupt' in document:
                logger.warning(
                    f"Skipping corrupt model record {document.get('model_id')}: "
                    f"{document['corrupt']}"
                )
                skipped += 1
                continue

            try:
                spec = ModelSpec.from_dict(document)
            except InvalidSpec as e:
                logger.warning(
                    f"Skipping invalid model record {document.get('model_id')}: {e}"
                )
                skipped += 1
                continue

            if spec.name in models:
                logger.warning(
                    f"Skipping model record {spec.model_id}: "
                    f"name '{spec.name}' is already loaded"
                )
                skipped += 1
                continue

            model = Model(spec=spec, state=ModelState.LOADED)
            model.trained_count = _parse_count(document.get('trained_count'), spec.name)
            record = self._load_weights(spec, timeout)
            if record is not None:
                weights, final_error, trained_count = record
                model.weights = weights
                model.final_error = final_error
                model.trained_count = max(model.trained_count, trained_count)
                model.state = ModelState.TRAINED
            model.touch()
            models[spec.name] = model

        with self._lock:
            self._models = models
            for name in list(self._model_locks):
                if name not in models:
                    del self._model_locks[name]

        logger.info(
            f"Loaded {len(models)} model(s) from storage"
            + (f", skipped {skipped} corrupt record(s)" if skipped else "")
        )
        return len(models)

    def _load_weights(
        self,
        spec: ModelSpec,
        timeout: float
    ) -> Optional[Tuple[network.NetworkWeights, Optional[float], int]]:
        """Decode a model's stored weights with the error and count of the run that wrote them."""
        try:
            record = self.adapter.get_weight_record(spec.model_id, timeout=timeout)
            if record is None:
                return None
            weights = decode_weights(record['weight_data'])
        except WeightFormatError as e:
            logger.warning(f"Ignoring corrupt weights of '{spec.name}': {e}")
            return None

        if weights.sizes != spec.layers:
            logger.warning(
                f"Ignoring weights of '{spec.name}': sizes {list(weights.sizes)} "
                f"do not match layers {list(spec.layers)}"
            )
            return None

        final_error = record['final_error']
        if final_error is not None:
            try:
                final_error = float(final_error)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unreadable final error of '{spec.name}': {final_error!r}")
                final_error = None
        return weights, final_error, _parse_count(record['trained_count'], spec.name)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> Model:
        """
        Look up a model by name.

        Raises:
            NotFound: If no such model is registered
        """
        with self._lock:
            model = self._models.get(name)
        if model is None:
            raise NotFound(f"Model '{name}' not found", model=name)
        return model

    def get_spec(self, name: str) -> ModelSpec:
        return self.get(name).spec

    def list_models(self) -> List[Dict[str, Any]]:
        """Summaries of every registered model, sorted by name."""
        with self._lock:
            models = sorted(self._models.values(), key=lambda m: m.name)
        return [model.summary() for model in models]

    def is_busy(self, name: str) -> bool:
        """True while a training run (or other exclusive operation) holds the model."""
        return self._model_lock(name).locked()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._models

    def __len__(self) -> int:
        with self._lock:
            return len(self._models)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def add(self, spec: ModelSpec) -> Model:
        """
        Register a new model and persist its spec.

        Raises:
            DuplicateName: If the name (or id) is already registered
            PersistenceFailure: If the spec cannot be written; the model
                is then not registered
        """
        with self._lock:
            if spec.name in self._models:
                raise DuplicateName(
                    f"Model '{spec.name}' already exists", model=spec.name
                )
            if any(m.model_id == spec.model_id for m in self._models.values()):
                raise DuplicateName(
                    f"Model id {spec.model_id} is already registered",
                    model=spec.name, model_id=spec.model_id
                )

            self.adapter.put_spec(
                self._document(spec, 0),
                timeout=self.config.io_timeout
            )
            model = Model(spec=spec, state=ModelState.LOADED)
            model.touch()
            self._models[spec.name] = model

        logger.info(f"Added model '{spec.name}' with layers {list(spec.layers)}")
        return model

    def respecify(
        self,
        name: str,
        layers: Optional[Sequence[int]] = None,
        error_target: Optional[float] = None,
        max_epochs: Optional[int] = None
    ) -> Model:
        """
        Change a model's topology or training targets.

        The existing weights are discarded, in storage and in memory, and
        the model returns to the loaded state.
        """
        with self._exclusive(name) as model:
            spec = model.spec.respecify(
                layers=layers, error_target=error_target, max_epochs=max_epochs
            )
            timeout = self.config.io_timeout
            self.adapter.put_spec(self._document(spec, model.trained_count), timeout=timeout)
            self.adapter.delete_weights(spec.model_id, timeout=timeout)

            with self._lock:
                model.spec = spec
                model.weights = None
                model.final_error = None
                model.state = ModelState.LOADED
                model.touch()

        logger.info(f"Re-specified model '{name}': layers {list(spec.layers)}")
        return model

    def remove(self, name: str) -> None:
        """
        Delete a model with its weights and examples.

        Raises:
            NotFound: If no such model is registered
        """
        with self._exclusive(name) as model:
            self.adapter.delete_model(model.model_id, timeout=self.config.io_timeout)

            with self._lock:
                del self._models[name]
                self._model_locks.pop(name, None)
                model.weights = None
                model.state = ModelState.DELETED

        logger.info(f"Removed model '{name}'")

    # ------------------------------------------------------------------
    # Examples
    # ------------------------------------------------------------------

    def add_example(
        self,
        name: str,
        input: Sequence[float],
        output: Sequence[float],
        raw_data: Any = None
    ) -> TrainingExample:
        """
        Record a training example for a model.

        Raises:
            NotFound: If no such model is registered
            DimensionMismatch: If the vector widths disagree with the layers
        """
        example = TrainingExample.create(input, output, raw_data)
        return self.datasets.append(name, example, timeout=self.config.io_timeout)

    def examples(self, name: str) -> ExampleSequence:
        return self.datasets.all(name, timeout=self.config.io_timeout)

    def clear_examples(self, name: str) -> int:
        cleared = self.datasets.clear(name, timeout=self.config.io_timeout)
        logger.info(f"Cleared {cleared} example(s) of '{name}'")
        return cleared

    # ------------------------------------------------------------------
    # Training and running
    # ------------------------------------------------------------------

    def train(
        self,
        name: str,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        blocking: bool = True,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None
    ) -> float:
        """
        Train a model on its recorded examples and persist the result.

        Only one run per model executes at a time. The new weights replace
        the old ones only after they have been written to storage.

        Args:
            name: Model name
            cancel: Token to cancel the run; when omitted, one is created
                from ``timeout``
            timeout: Deadline in seconds for the whole run, used when no
                token is given
            blocking: Wait for a run already in progress instead of failing
            callback: Called after every epoch with a progress dictionary

        Returns:
            float: The model's final training error

        Raises:
            NotFound: If no such model is registered
            ModelBusy: If ``blocking`` is False and a run is in progress
            EmptyDataset: If no examples are recorded
            DimensionMismatch: If a recorded example no longer fits the layers
            Cancelled: If the token fires; prior weights stay in place
            PersistenceFailure: If the weights cannot be written; prior
                weights stay in place
        """
        token = cancel if cancel is not None else CancellationToken(timeout)

        with self._exclusive(name, blocking=blocking, token=token) as model:
            spec = model.spec
            examples = list(self.datasets.all(name, timeout=self._io_timeout(token, name)))
            if not examples:
                raise EmptyDataset(
                    f"No training examples recorded for '{name}'", model=name
                )

            start = model.weights if self.config.warm_start else None
            logger.info(
                f"Training '{name}' on {len(examples)} example(s), "
                f"up to {spec.max_epochs} epoch(s)..."
            )
            weights, error = network.train(
                start, spec, examples,
                options=self.config.training,
                cancel=token,
                callback=callback
            )
            token.raise_if_cancelled(name)

            previous_error = model.final_error
            if (self.config.keep_best and model.weights is not None
                    and previous_error is not None and error > previous_error):
                logger.info(
                    f"Keeping previous weights of '{name}': new error {error:.6g} "
                    f"is worse than {previous_error:.6g}"
                )
                return previous_error

            self._persist_weights(model, weights, error, token)

            with self._lock:
                model.weights = weights
                model.final_error = error
                model.trained_count += 1
                model.state = ModelState.TRAINED
                model.touch()

        logger.info(f"Trained '{name}': error {error:.6g} (target {spec.error_target})")
        return error

    def _persist_weights(
        self,
        model: Model,
        weights: network.NetworkWeights,
        error: float,
        token: CancellationToken
    ) -> None:
        """Write the weight blob together with the run's error and count in one transaction."""
        spec = model.spec
        blob = encode_weights(weights)
        try:
            self.adapter.put_weights(
                spec.model_id, blob, error,
                trained_count=model.trained_count + 1,
                timeout=self._io_timeout(token, spec.name)
            )
        except PersistenceFailure:
            logger.error(f"Failed to save weights of '{spec.name}', keeping the previous ones")
            raise

    def run(self, name: str, input: Sequence[float]) -> List[float]:
        """
        Run an input through a trained model.

        Raises:
            NotFound: If no such model is registered
            Untrained: If the model has no weights yet
            DimensionMismatch: If the input width is wrong
        """
        model = self.get(name)
        weights = model.weights
        if weights is None:
            raise Untrained(
                f"Model '{name}' has no trained network, train it first",
                model=name
            )
        return network.forward(weights, input, name=name).tolist()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _model_lock(self, name: str) -> threading.Lock:
        """The lock of a registered model; no lock is created for unknown names."""
        with self._lock:
            if name not in self._models:
                raise NotFound(f"Model '{name}' not found", model=name)
            return self._model_locks.setdefault(name, threading.Lock())

    def _exclusive(
        self,
        name: str,
        blocking: bool = True,
        token: Optional[CancellationToken] = None
    ) -> '_ModelGuard':
        return _ModelGuard(self, name, blocking, token)

    def _io_timeout(self, token: Optional[CancellationToken], name: str) -> float:
        if token is None:
            return self.config.io_timeout
        token.raise_if_cancelled(name)
        remaining = token.remaining()
        if remaining is None:
            return self.config.io_timeout
        return min(self.config.io_timeout, remaining)

    @staticmethod
    def _document(spec: ModelSpec, trained_count: int) -> Dict[str, Any]:
        # Run results live in the weight row, written atomically with the blob
        document = spec.to_dict()
        document['trained_count'] = trained_count
        return document


def _parse_count(value: Any, name: str) -> int:
    """Read a stored training count, treating unreadable values as 0."""
    if value is None:
        return 0
    try:
        count = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unreadable training count of '{name}': {value!r}")
        return 0
    return max(count, 0)


class _ModelGuard:
    """Holds a model's lock for the duration of a ``with`` block."""

    def __init__(
        self,
        registry: ModelRegistry,
        name: str,
        blocking: bool,
        token: Optional[CancellationToken]
    ):
        self.registry = registry
        self.name = name
        self.blocking = blocking
        self.token = token
        self.lock = registry._model_lock(name)

    def __enter__(self) -> Model:
        if not self.blocking:
            acquired = self.lock.acquire(blocking=False)
            if not acquired:
                raise ModelBusy(
                    f"Model '{self.name}' is already being trained",
                    model=self.name
                )
        else:
            remaining = self.token.remaining() if self.token is not None else None
            acquired = self.lock.acquire(timeout=-1 if remaining is None else remaining)
            if not acquired:
                self.token.raise_if_cancelled(self.name)
                raise ModelBusy(
                    f"Timed out waiting for model '{self.name}'", model=self.name
                )

        # The model may have been removed or replaced while we waited
        with self.registry._lock:
            model = self.registry._models.get(self.name)
            current = self.registry._model_locks.get(self.name)
            if model is None and current is self.lock:
                del self.registry._model_locks[self.name]
        if model is None or current is not self.lock:
            self.lock.release()
            raise NotFound(f"Model '{self.name}' not found", model=self.name)

        if self.token is not None:
            try:
                self.token.raise_if_cancelled(self.name)
            except Exception:
                self.lock.release()
                raise
        return model

    def __exit__(self, exc_type, exc_value, tb) -> None:
        self.lock.release()
