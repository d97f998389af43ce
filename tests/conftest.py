"""
conftest.py
~~~~~~~~~~~

Shared fixtures for fannstore tests.
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fannstore.models import ModelSpec, TrainingExample
from fannstore.network import TrainingOptions
from fannstore.persistence import SQLiteAdapter
from fannstore.registry import ModelRegistry, RegistryConfig

# Identity mapping on two one-hot vectors: trivially realizable
IDENTITY_EXAMPLES = [
    ([0.0, 1.0], [0.0, 1.0]),
    ([1.0, 0.0], [1.0, 0.0]),
]

XOR_EXAMPLES = [
    ([0.0, 0.0], [0.0]),
    ([0.0, 1.0], [1.0]),
    ([1.0, 0.0], [1.0]),
    ([1.0, 1.0], [0.0]),
]


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def db_path(temp_db_dir):
    return os.path.join(temp_db_dir, "fannstore.db")


@pytest.fixture
def adapter(db_path):
    return SQLiteAdapter(db_path=db_path)


@pytest.fixture
def fast_config():
    """Registry config with a high learning rate so small tests converge quickly."""
    return RegistryConfig(training=TrainingOptions(learning_rate=3.0))


@pytest.fixture
def registry(adapter, fast_config):
    return ModelRegistry(adapter, fast_config)


@pytest.fixture
def identity_spec():
    return ModelSpec(name="identity", layers=(2, 3, 2), error_target=0.01, max_epochs=20000)


@pytest.fixture
def identity_examples():
    return [TrainingExample.create(x, y) for x, y in IDENTITY_EXAMPLES]


@pytest.fixture
def trained_registry(registry, identity_spec):
    """Registry holding an 'identity' model that has been trained once."""
    registry.add(identity_spec)
    for x, y in IDENTITY_EXAMPLES:
        registry.add_example("identity", x, y)
    registry.train("identity")
    return registry
