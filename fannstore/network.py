"""
network.py
~~~~~~~~~~

Feed-forward neural network engine: weight storage, forward pass,
backpropagation and a gradient-descent training loop.

All layers use the sigmoid activation and training minimises the mean
squared error. Weights for the transition from layer ``l`` to ``l + 1`` are
stored as a ``(sizes[l+1], sizes[l])`` matrix and biases as a
``(sizes[l+1], 1)`` column, so a batch of inputs is a matrix whose columns
are examples.

Training never mutates the weights it is given; it works on a copy and
returns the result, so callers can swap weights in atomically.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .cancellation import CancellationToken
from .errors import DimensionMismatch, EmptyDataset, InvalidSpec
from .models import ModelSpec, TrainingExample

logger = logging.getLogger(__name__)

DEFAULT_LEARNING_RATE = 0.7
DEFAULT_SEED = 0


def sigmoid(z: np.ndarray) -> np.ndarray:
    """The sigmoid function."""
    return 1.0 / (1.0 + np.exp(-np.clip(z, -500, 500)))


def sigmoid_prime(z: np.ndarray) -> np.ndarray:
    """Derivative of the sigmoid function."""
    s = sigmoid(z)
    return s * (1 - s)


class NetworkWeights:
    """
    Dense per-layer weight matrices and bias vectors.

    The layer sizes are derived from the matrix shapes, which must chain:
    each matrix's column count equals the previous matrix's row count.
    """

    def __init__(self, weights: Sequence[np.ndarray], biases: Sequence[np.ndarray]):
        if len(weights) == 0 or len(weights) != len(biases):
            raise DimensionMismatch(
                "Weights and biases must be non-empty and of equal length",
                weight_layers=len(weights), bias_layers=len(biases)
            )

        self.weights: List[np.ndarray] = [
            np.array(w, dtype=np.float64) for w in weights
        ]
        self.biases: List[np.ndarray] = [
            np.array(b, dtype=np.float64).reshape(-1, 1) for b in biases
        ]

        for i, (w, b) in enumerate(zip(self.weights, self.biases)):
            if w.ndim != 2:
                raise DimensionMismatch(
                    f"Weight matrix {i} must be 2-dimensional",
                    layer=i, shape=list(w.shape)
                )
            if i > 0 and w.shape[1] != self.weights[i - 1].shape[0]:
                raise DimensionMismatch(
                    f"Weight matrix {i} expects {w.shape[1]} inputs but layer "
                    f"{i} has {self.weights[i - 1].shape[0]} neurons",
                    layer=i, expected=self.weights[i - 1].shape[0],
                    actual=w.shape[1]
                )
            if b.shape[0] != w.shape[0]:
                raise DimensionMismatch(
                    f"Bias vector {i} has {b.shape[0]} entries, "
                    f"expected {w.shape[0]}",
                    layer=i, expected=w.shape[0], actual=b.shape[0]
                )

    @property
    def sizes(self) -> Tuple[int, ...]:
        """Layer sizes, input first."""
        return (self.weights[0].shape[1],) + tuple(w.shape[0] for w in self.weights)

    @property
    def num_parameters(self) -> int:
        return sum(w.size + b.size for w, b in zip(self.weights, self.biases))

    def copy(self) -> 'NetworkWeights':
        return NetworkWeights(
            [w.copy() for w in self.weights],
            [b.copy() for b in self.biases]
        )

    def allclose(self, other: 'NetworkWeights', atol: float = 1e-6) -> bool:
        """True if both have the same sizes and values within ``atol``."""
        if self.sizes != other.sizes:
            return False
        return all(
            np.allclose(a, b, atol=atol)
            for a, b in zip(self.weights + self.biases, other.weights + other.biases)
        )

    def __repr__(self) -> str:
        return f"NetworkWeights(sizes={list(self.sizes)})"


def initialize(
    spec: Union[ModelSpec, Sequence[int]],
    seed: Optional[int] = None
) -> NetworkWeights:
    """
    Allocate weights for the given layer sizes.

    Weights are drawn from a Gaussian scaled by ``1/sqrt(fan_in)`` and biases
    from a unit Gaussian scaled by 0.1, keeping initial activations away from
    the flat ends of the sigmoid.

    Args:
        spec: A ModelSpec or a sequence of layer sizes
        seed: Seed for reproducible weights (None draws fresh entropy)

    Returns:
        NetworkWeights: Newly allocated weights

    Raises:
        InvalidSpec: If fewer than 2 layers or a non-positive size is given
    """
    sizes = tuple(spec.layers) if isinstance(spec, ModelSpec) else tuple(spec)
    if len(sizes) < 2 or any(int(n) <= 0 for n in sizes):
        raise InvalidSpec(
            "Layer sizes must contain at least 2 positive entries",
            layers=list(sizes)
        )

    rng = np.random.default_rng(seed)
    weights = [
        rng.standard_normal((y, x)) / np.sqrt(x)
        for x, y in zip(sizes[:-1], sizes[1:])
    ]
    biases = [rng.standard_normal((y, 1)) * 0.1 for y in sizes[1:]]
    return NetworkWeights(weights, biases)


def _feedforward(weights: NetworkWeights, a: np.ndarray) -> np.ndarray:
    """Propagate a column batch ``a`` of shape (sizes[0], n) through the network."""
    for w, b in zip(weights.weights, weights.biases):
        a = sigmoid(w @ a + b)
    return a


def forward(weights: NetworkWeights, input: Sequence[float], name: Optional[str] = None) -> np.ndarray:
    """
    Compute the network's output for a single input vector.

    Args:
        weights: Network weights
        input: Input vector of width ``sizes[0]``
        name: Model name for error details

    Returns:
        1-D array of output activations

    Raises:
        DimensionMismatch: If the input width is wrong
    """
    expected = weights.sizes[0]
    try:
        x = np.asarray(input, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise DimensionMismatch(
            f"Input must be a flat vector of {expected} numbers: {e}",
            model=name, field='input', expected=expected
        ) from e
    if x.ndim != 1 or x.shape[0] != expected:
        raise DimensionMismatch(
            f"Input width {x.size} does not match input layer size {expected}",
            model=name, field='input', expected=expected, actual=int(x.size)
        )
    return _feedforward(weights, x.reshape(-1, 1)).ravel()


def _as_matrices(
    examples: Sequence[TrainingExample],
    sizes: Sequence[int],
    name: Optional[str] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """Stack examples into column matrices, checking every vector's width."""
    n_in, n_out = sizes[0], sizes[-1]
    for index, example in enumerate(examples):
        if len(example.input) != n_in or len(example.output) != n_out:
            raise DimensionMismatch(
                f"Example {index} has widths "
                f"({len(example.input)}, {len(example.output)}), "
                f"expected ({n_in}, {n_out})",
                model=name, example=index,
                expected=[n_in, n_out],
                actual=[len(example.input), len(example.output)]
            )
    x = np.array([e.input for e in examples], dtype=np.float64).reshape(-1, n_in).T
    y = np.array([e.output for e in examples], dtype=np.float64).reshape(-1, n_out).T
    return x, y


def _mse(weights: NetworkWeights, x: np.ndarray, y: np.ndarray) -> float:
    return float(np.mean((_feedforward(weights, x) - y) ** 2))


def mean_squared_error(
    weights: NetworkWeights,
    examples: Iterable[TrainingExample]
) -> float:
    """
    Mean squared error over a dataset.

    The squared output differences are summed and divided by
    ``n_examples * n_outputs``.

    Raises:
        EmptyDataset: If there are no examples
        DimensionMismatch: If an example's widths disagree with the weights
    """
    examples = list(examples)
    if not examples:
        raise EmptyDataset("Cannot compute the error of an empty dataset")
    x, y = _as_matrices(examples, weights.sizes)
    return _mse(weights, x, y)


def _backprop(
    weights: NetworkWeights,
    x: np.ndarray,
    y: np.ndarray
) -> Tuple[List[np.ndarray], List[np.ndarray]]:
    """
    Gradient of the quadratic cost summed over a column batch.

    Returns:
        Tuple of (weight_gradients, bias_gradients), layer by layer
    """
    activation = x
    activations = [x]
    zs = []
    for w, b in zip(weights.weights, weights.biases):
        z = w @ activation + b
        zs.append(z)
        activation = sigmoid(z)
        activations.append(activation)

    nabla_w = [np.zeros_like(w) for w in weights.weights]
    nabla_b = [np.zeros_like(b) for b in weights.biases]

    # Output layer
    delta = (activations[-1] - y) * sigmoid_prime(zs[-1])
    nabla_b[-1] = delta.sum(axis=1, keepdims=True)
    nabla_w[-1] = delta @ activations[-2].T

    # Hidden layers, from the last towards the input
    for l in range(2, len(weights.sizes)):
        delta = (weights.weights[-l + 1].T @ delta) * sigmoid_prime(zs[-l])
        nabla_b[-l] = delta.sum(axis=1, keepdims=True)
        nabla_w[-l] = delta @ activations[-l - 1].T

    return nabla_w, nabla_b


def _update_mini_batch(
    weights: NetworkWeights,
    x: np.ndarray,
    y: np.ndarray,
    learning_rate: float
) -> None:
    """Apply one gradient-descent step in place, averaged over the batch."""
    nabla_w, nabla_b = _backprop(weights, x, y)
    scale = learning_rate / x.shape[1]
    for i in range(len(weights.weights)):
        weights.weights[i] -= scale * nabla_w[i]
        weights.biases[i] -= scale * nabla_b[i]


@dataclass(frozen=True)
class TrainingOptions:
    """Hyper-parameters of the training loop."""
    learning_rate: float = DEFAULT_LEARNING_RATE
    mini_batch_size: Optional[int] = None  # None trains full-batch
    seed: Optional[int] = DEFAULT_SEED
    shuffle: bool = True

    def __post_init__(self):
        if not self.learning_rate > 0:
            raise ValueError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if self.mini_batch_size is not None and self.mini_batch_size < 1:
            raise ValueError(
                f"mini_batch_size must be a positive integer, "
                f"got {self.mini_batch_size}"
            )


def train(
    weights: Optional[NetworkWeights],
    spec: ModelSpec,
    examples: Iterable[TrainingExample],
    options: Optional[TrainingOptions] = None,
    cancel: Optional[CancellationToken] = None,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None
) -> Tuple[NetworkWeights, float]:
    """
    Train a network with mini-batch gradient descent.

    Runs at most ``spec.max_epochs`` epochs and stops as soon as the mean
    squared error over the whole dataset reaches ``spec.error_target``.

    Args:
        weights: Starting weights (copied, never mutated), or None to start
            from ``initialize(spec, options.seed)``
        spec: Model specification supplying topology and stopping criteria
        examples: Training examples
        options: Training hyper-parameters
        cancel: Token checked between mini-batches
        callback: Called after each epoch with a progress dictionary

    Returns:
        Tuple of (trained weights, final error)

    Raises:
        EmptyDataset: If there are no examples
        DimensionMismatch: If the weights or an example disagree with
            ``spec.layers``
        Cancelled: If the token fires; the partial weights are discarded
    """
    options = options or TrainingOptions()
    examples = list(examples)
    if not examples:
        raise EmptyDataset(
            f"No training examples recorded for '{spec.name}'",
            model=spec.name
        )
    x, y = _as_matrices(examples, spec.layers, spec.name)

    if weights is None:
        net = initialize(spec, seed=options.seed)
    else:
        if weights.sizes != spec.layers:
            raise DimensionMismatch(
                f"Weights of sizes {list(weights.sizes)} do not match "
                f"layers {list(spec.layers)} of '{spec.name}'",
                model=spec.name, expected=list(spec.layers),
                actual=list(weights.sizes)
            )
        net = weights.copy()

    rng = np.random.default_rng(options.seed)
    n = x.shape[1]
    batch_size = options.mini_batch_size or n
    start_time = time.time()

    error = _mse(net, x, y)
    epochs_run = 0
    for epoch in range(1, spec.max_epochs + 1):
        if error <= spec.error_target:
            break

        order = rng.permutation(n) if options.shuffle else np.arange(n)
        for k in range(0, n, batch_size):
            if cancel is not None:
                cancel.raise_if_cancelled(spec.name)
            batch = order[k:k + batch_size]
            _update_mini_batch(net, x[:, batch], y[:, batch], options.learning_rate)

        error = _mse(net, x, y)
        epochs_run = epoch

        if callback is not None:
            callback({
                'epoch': epoch,
                'total_epochs': spec.max_epochs,
                'error': error,
                'elapsed_time': time.time() - start_time
            })

    logger.debug(
        f"Trained '{spec.name}' for {epochs_run} epoch(s) on {n} example(s): "
        f"error={error:.6g}, target={spec.error_target}"
    )
    return net, error
