"""
models.py
~~~~~~~~~

Data model for registered networks: specifications, training examples and
the model aggregate tracked by the registry.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence, Tuple

from .errors import DimensionMismatch, InvalidSpec

if TYPE_CHECKING:
    from .network import NetworkWeights

DEFAULT_ERROR_TARGET = 0.001
DEFAULT_MAX_EPOCHS = 100000


def generate_model_id() -> str:
    """Generate a stable storage id for a new model."""
    return uuid.uuid4().hex


def _as_vector(values: Sequence[float], field_name: str) -> Tuple[float, ...]:
    try:
        return tuple(float(v) for v in values)
    except (TypeError, ValueError) as e:
        raise DimensionMismatch(
            f"'{field_name}' must be a sequence of numbers: {e}",
            field=field_name
        )


@dataclass(frozen=True)
class ModelSpec:
    """
    Topology and training targets of a feed-forward network.

    ``layers`` lists the input, hidden and output layer sizes; at least one
    hidden layer is required. ``model_id`` is the storage key and never
    changes, even when the model is re-specified.
    """
    name: str
    layers: Tuple[int, ...]
    error_target: float = DEFAULT_ERROR_TARGET
    max_epochs: int = DEFAULT_MAX_EPOCHS
    model_id: str = field(default_factory=generate_model_id)

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise InvalidSpec(
                "Model name must be a non-empty string", model=self.name
            )

        if isinstance(self.layers, (str, bytes)) or not hasattr(self.layers, '__iter__'):
            raise InvalidSpec(
                "Layers must be a sequence of positive integers",
                model=self.name, layers=self.layers
            )
        layers = tuple(self.layers)
        if len(layers) < 3:
            raise InvalidSpec(
                f"Layers needs at least 3 entries (input, hidden, output), "
                f"got {len(layers)}",
                model=self.name, layers=list(layers)
            )
        if any(isinstance(n, bool) or not isinstance(n, int) or n <= 0
               for n in layers):
            raise InvalidSpec(
                "Every layer size must be a positive integer",
                model=self.name, layers=list(layers)
            )
        object.__setattr__(self, 'layers', layers)

        if (isinstance(self.error_target, bool)
                or not isinstance(self.error_target, (int, float))
                or not self.error_target > 0):
            raise InvalidSpec(
                f"error_target must be a positive number, "
                f"got {self.error_target!r}",
                model=self.name, error_target=self.error_target
            )
        object.__setattr__(self, 'error_target', float(self.error_target))

        if (isinstance(self.max_epochs, bool)
                or not isinstance(self.max_epochs, int)
                or self.max_epochs <= 0):
            raise InvalidSpec(
                f"max_epochs must be a positive integer, "
                f"got {self.max_epochs!r}",
                model=self.name, max_epochs=self.max_epochs
            )

    @property
    def input_size(self) -> int:
        return self.layers[0]

    @property
    def output_size(self) -> int:
        return self.layers[-1]

    def respecify(self, **changes: Any) -> 'ModelSpec':
        """
        Return a copy with new topology or training targets.

        The name and model id are preserved; weights trained for the old
        specification must not be reused with the new one.
        """
        for key in ('name', 'model_id'):
            if key in changes:
                raise InvalidSpec(
                    f"'{key}' cannot be changed by re-specification",
                    model=self.name, field=key
                )
        if isinstance(changes.get('layers'), list):
            changes['layers'] = tuple(changes['layers'])
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def to_dict(self) -> Dict[str, Any]:
        """Document representation stored by the persistence adapter."""
        return {
            'model_id': self.model_id,
            'name': self.name,
            'layers': list(self.layers),
            'error_target': self.error_target,
            'max_epochs': self.max_epochs
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ModelSpec':
        """
        Build a spec from a stored document.

        Raises:
            InvalidSpec: If the document is missing fields or violates
                the spec invariants
        """
        try:
            return cls(
                name=data['name'],
                layers=tuple(data['layers']),
                error_target=data.get('error_target', DEFAULT_ERROR_TARGET),
                max_epochs=data.get('max_epochs', DEFAULT_MAX_EPOCHS),
                model_id=data['model_id']
            )
        except (KeyError, TypeError) as e:
            raise InvalidSpec(
                f"Malformed model document: {e}",
                model=data.get('name') if isinstance(data, dict) else None
            )


@dataclass(frozen=True)
class TrainingExample:
    """One input/output pair, with optional provenance data."""
    input: Tuple[float, ...]
    output: Tuple[float, ...]
    raw_data: Any = None

    @classmethod
    def create(
        cls,
        input: Sequence[float],
        output: Sequence[float],
        raw_data: Any = None
    ) -> 'TrainingExample':
        """Build an example, coercing both vectors to floats."""
        return cls(
            input=_as_vector(input, 'input'),
            output=_as_vector(output, 'output'),
            raw_data=raw_data
        )

    def check_against(self, spec: ModelSpec) -> None:
        """
        Verify the vector widths match the spec's input and output layers.

        Raises:
            DimensionMismatch: If either width is wrong
        """
        if len(self.input) != spec.input_size:
            raise DimensionMismatch(
                f"Input width {len(self.input)} does not match input layer "
                f"size {spec.input_size} of '{spec.name}'",
                model=spec.name, field='input',
                expected=spec.input_size, actual=len(self.input)
            )
        if len(self.output) != spec.output_size:
            raise DimensionMismatch(
                f"Output width {len(self.output)} does not match output layer "
                f"size {spec.output_size} of '{spec.name}'",
                model=spec.name, field='output',
                expected=spec.output_size, actual=len(self.output)
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'input': list(self.input),
            'output': list(self.output),
            'raw_data': self.raw_data
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrainingExample':
        return cls.create(data['input'], data['output'], data.get('raw_data'))


class ModelState(str, Enum):
    UNLOADED = 'unloaded'
    LOADED = 'loaded'
    TRAINED = 'trained'
    DELETED = 'deleted'


@dataclass
class Model:
    """A registered model: its spec, current weights and lifecycle state."""
    spec: ModelSpec
    weights: Optional['NetworkWeights'] = None
    state: ModelState = ModelState.UNLOADED
    final_error: Optional[float] = None
    trained_count: int = 0
    updated_at: Optional[str] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def model_id(self) -> str:
        return self.spec.model_id

    @property
    def trained(self) -> bool:
        return self.weights is not None

    def touch(self) -> None:
        self.updated_at = datetime.now().isoformat()

    def summary(self) -> Dict[str, Any]:
        """Metadata dictionary for listings, without the weights themselves."""
        layers = self.spec.layers
        return {
            **self.spec.to_dict(),
            'state': self.state.value,
            'trained': self.trained,
            'final_error': self.final_error,
            'trained_count': self.trained_count,
            'weights_shape': [
                [layers[i + 1], layers[i]] for i in range(len(layers) - 1)
            ],
            'biases_shape': [
                [layers[i + 1], 1] for i in range(len(layers) - 1)
            ],
            'updated_at': self.updated_at
        }
