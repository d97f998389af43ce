"""
fannstore package
~~~~~~~~~~~~~~~~~

Registry of named feed-forward neural networks backed by a document store.
Contains the network engine, weight blob codec, training example store,
model registry, SQLite persistence and the REST API server.
"""

from .cancellation import CancellationToken
from .errors import (
    Cancelled,
    DimensionMismatch,
    DuplicateName,
    EmptyDataset,
    FannStoreError,
    InvalidSpec,
    ModelBusy,
    NotFound,
    PersistenceFailure,
    Untrained,
    WeightFormatError,
)
from .models import Model, ModelSpec, ModelState, TrainingExample
from .network import NetworkWeights, TrainingOptions
from .persistence import PersistenceAdapter, SQLiteAdapter
from .registry import ModelRegistry, RegistryConfig

__version__ = "1.0.0"

__all__ = [
    'CancellationToken',
    'Cancelled',
    'DimensionMismatch',
    'DuplicateName',
    'EmptyDataset',
    'FannStoreError',
    'InvalidSpec',
    'Model',
    'ModelBusy',
    'ModelRegistry',
    'ModelSpec',
    'ModelState',
    'NetworkWeights',
    'NotFound',
    'PersistenceAdapter',
    'PersistenceFailure',
    'RegistryConfig',
    'SQLiteAdapter',
    'TrainingExample',
    'TrainingOptions',
    'Untrained',
    'WeightFormatError',
]
