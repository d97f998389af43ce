"""
persistence.py
~~~~~~~~~~~~~~

Persistence adapters for model specifications, weight blobs and training
examples.

:class:`PersistenceAdapter` is the contract the registry depends on;
:class:`SQLiteAdapter` implements it on a single SQLite database with ACID
transaction guarantees. Every record is keyed by the model's stable id, never
by its display name.
"""

import os
import json
import sqlite3
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterator, List, Optional

from .errors import PersistenceFailure, WeightFormatError

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = 'models/fannstore.db'
DEFAULT_TIMEOUT = 30.0


class PersistenceAdapter(ABC):
    """
    Storage contract used by the model registry.

    Spec documents are plain dictionaries (see ``ModelSpec.to_dict``) and
    examples are dictionaries with ``input``, ``output`` and ``raw_data``.
    Every method accepts an optional ``timeout`` in seconds and raises
    :class:`PersistenceFailure` on any storage error.
    """

    @abstractmethod
    def get_all_specs(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Return every stored spec document, oldest first."""

    @abstractmethod
    def put_spec(self, spec: Dict[str, Any], timeout: Optional[float] = None) -> None:
        """Insert or replace a spec document."""

    @abstractmethod
    def get_weight_record(
        self,
        model_id: str,
        timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Return a model's weights with the results of the run that produced
        them: ``{'weight_data', 'final_error', 'trained_count'}``, or None.
        """

    @abstractmethod
    def put_weights(
        self,
        model_id: str,
        blob: bytes,
        final_error: Optional[float] = None,
        trained_count: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> None:
        """Insert or replace the weight blob of a model with its run results, atomically."""

    @abstractmethod
    def delete_weights(self, model_id: str, timeout: Optional[float] = None) -> bool:
        """Delete the weight blob of a model."""

    @abstractmethod
    def delete_model(self, model_id: str, timeout: Optional[float] = None) -> bool:
        """Delete a model's spec, weights and examples together."""

    @abstractmethod
    def append_example(
        self,
        model_id: str,
        example: Dict[str, Any],
        timeout: Optional[float] = None
    ) -> None:
        """Append a training example."""

    @abstractmethod
    def iter_examples(
        self,
        model_id: str,
        timeout: Optional[float] = None
    ) -> Iterator[Dict[str, Any]]:
        """Yield a model's examples in insertion order."""

    @abstractmethod
    def count_examples(self, model_id: str, timeout: Optional[float] = None) -> int:
        """Number of examples recorded for a model."""

    @abstractmethod
    def clear_examples(self, model_id: str, timeout: Optional[float] = None) -> int:
        """Delete all examples of a model, returning how many were removed."""

    def get_weights(self, model_id: str, timeout: Optional[float] = None) -> Optional[bytes]:
        """Return the weight blob of a model, or None if it has none."""
        record = self.get_weight_record(model_id, timeout=timeout)
        return None if record is None else record['weight_data']

    def get_examples(
        self,
        model_id: str,
        timeout: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """Return a model's examples as a list."""
        return list(self.iter_examples(model_id, timeout=timeout))


class SQLiteAdapter(PersistenceAdapter):
    """
    Manages the SQLite database backing the model registry.

    The database stores:
    - Model specifications (name, layers, training targets)
    - Trained weights as binary blobs
    - Training examples, one row each, in insertion order
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the database.

        Args:
            db_path: Path to the SQLite database file
            timeout: Default seconds to wait for a locked database
        """
        self.db_path = db_path
        self.timeout = timeout
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(
        self,
        operation: str,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on failure. SQLite errors are
        re-raised as PersistenceFailure naming the operation and model.

        Yields:
            sqlite3.Connection: Database connection
        """
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout if timeout is None else timeout
            )
        except sqlite3.Error as e:
            raise PersistenceFailure(
                f"Could not open database '{self.db_path}': {e}",
                operation=operation, model_id=model_id
            ) from e

        conn.row_factory = sqlite3.Row  # Enable column access by name
        conn.execute('PRAGMA foreign_keys = ON')
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Database error during {operation} ({model_id}): {e}")
            raise PersistenceFailure(
                f"Database error during {operation}: {e}",
                operation=operation, model_id=model_id
            ) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection('initialize_schema') as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS models (
                    model_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    spec TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS weights (
                    model_id TEXT PRIMARY KEY
                        REFERENCES models(model_id) ON DELETE CASCADE,
                    weight_data BLOB NOT NULL,
                    final_error REAL,
                    trained_count INTEGER,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS examples (
                    example_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    model_id TEXT NOT NULL
                        REFERENCES models(model_id) ON DELETE CASCADE,
                    input TEXT NOT NULL,
                    output TEXT NOT NULL,
                    raw_data TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            # Databases created before run results moved to the weights row
            columns = {row['name'] for row in cursor.execute('PRAGMA table_info(weights)')}
            if 'trained_count' not in columns:
                cursor.execute('ALTER TABLE weights ADD COLUMN trained_count INTEGER')

            # Create index for example replay
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_examples_model
                ON examples(model_id, example_id)
            ''')

    def get_all_specs(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Return every stored spec document.

        A document that is not valid JSON is returned as
        ``{'model_id': ..., 'name': ..., 'corrupt': <reason>}`` so the caller
        can skip it without aborting the whole load.
        """
        with self._get_connection('get_all_specs', timeout=timeout) as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT model_id, name, spec, created_at, updated_at
                FROM models
                ORDER BY created_at, rowid
            ''')

            specs = []
            for row in cursor.fetchall():
                try:
                    document = json.loads(row['spec'])
                    if not isinstance(document, dict):
                        raise ValueError('spec is not an object')
                except ValueError as e:
                    document = {'corrupt': str(e)}
                document.setdefault('model_id', row['model_id'])
                document.setdefault('name', row['name'])
                specs.append(document)

            logger.debug(f"Read {len(specs)} model spec(s)")
            return specs

    def put_spec(self, spec: Dict[str, Any], timeout: Optional[float] = None) -> None:
        model_id = spec['model_id']
        with self._get_connection('put_spec', model_id, timeout) as conn:
            conn.execute('''
                INSERT INTO models (model_id, name, spec)
                VALUES (?, ?, ?)
                ON CONFLICT(model_id) DO UPDATE SET
                    name = excluded.name,
                    spec = excluded.spec,
                    updated_at = CURRENT_TIMESTAMP
            ''', (model_id, spec['name'], json.dumps(spec)))

        logger.info(f"Saved spec of model '{spec['name']}' ({model_id})")

    def get_weight_record(
        self,
        model_id: str,
        timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Read the weight row of a model.

        Raises:
            WeightFormatError: If the stored weights are not a binary blob
        """
        with self._get_connection('get_weights', model_id, timeout) as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT weight_data, final_error, trained_count
                FROM weights WHERE model_id = ?
            ''', (model_id,))
            row = cursor.fetchone()
            if row is None:
                return None

            weight_data = row['weight_data']
            if not isinstance(weight_data, (bytes, memoryview)):
                raise WeightFormatError(
                    f"Stored weights are {type(weight_data).__name__}, not a blob",
                    operation='get_weights', model_id=model_id
                )
            return {
                'weight_data': bytes(weight_data),
                'final_error': row['final_error'],
                'trained_count': row['trained_count']
            }

    def put_weights(
        self,
        model_id: str,
        blob: bytes,
        final_error: Optional[float] = None,
        trained_count: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> None:
        with self._get_connection('put_weights', model_id, timeout) as conn:
            conn.execute('''
                INSERT OR REPLACE INTO weights
                (model_id, weight_data, final_error, trained_count, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
            ''', (model_id, sqlite3.Binary(blob), final_error, trained_count))

        logger.info(
            f"Saved weights of model {model_id} "
            f"({len(blob)} bytes, error={final_error})"
        )

    def delete_weights(self, model_id: str, timeout: Optional[float] = None) -> bool:
        with self._get_connection('delete_weights', model_id, timeout) as conn:
            cursor = conn.cursor()
            cursor.execute('DELETE FROM weights WHERE model_id = ?', (model_id,))
            return cursor.rowcount > 0

    def delete_model(self, model_id: str, timeout: Optional[float] = None) -> bool:
        """Delete the spec, weights and examples in one transaction."""
        with self._get_connection('delete_model', model_id, timeout) as conn:
            cursor = conn.cursor()
            cursor.execute('DELETE FROM examples WHERE model_id = ?', (model_id,))
            cursor.execute('DELETE FROM weights WHERE model_id = ?', (model_id,))
            cursor.execute('DELETE FROM models WHERE model_id = ?', (model_id,))

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted model {model_id}")
            else:
                logger.warning(f"Could not delete model {model_id}: not found")
            return deleted

    def append_example(
        self,
        model_id: str,
        example: Dict[str, Any],
        timeout: Optional[float] = None
    ) -> None:
        try:
            raw_data = json.dumps(example.get('raw_data'))
        except (TypeError, ValueError) as e:
            raise PersistenceFailure(
                f"raw_data is not JSON-serializable: {e}",
                operation='append_example', model_id=model_id
            ) from e

        with self._get_connection('append_example', model_id, timeout) as conn:
            conn.execute('''
                INSERT INTO examples (model_id, input, output, raw_data)
                VALUES (?, ?, ?, ?)
            ''', (
                model_id,
                json.dumps(list(example['input'])),
                json.dumps(list(example['output'])),
                raw_data
            ))

    def iter_examples(
        self,
        model_id: str,
        timeout: Optional[float] = None
    ) -> Iterator[Dict[str, Any]]:
        with self._get_connection('iter_examples', model_id, timeout) as conn:
            cursor = conn.execute('''
                SELECT input, output, raw_data
                FROM examples
                WHERE model_id = ?
                ORDER BY example_id
            ''', (model_id,))

            for row in cursor:
                try:
                    example = {
                        'input': json.loads(row['input']),
                        'output': json.loads(row['output']),
                        'raw_data': (
                            json.loads(row['raw_data'])
                            if row['raw_data'] is not None else None
                        )
                    }
                except ValueError as e:
                    raise PersistenceFailure(
                        f"Corrupt example row: {e}",
                        operation='iter_examples', model_id=model_id
                    ) from e
                yield example

    def count_examples(self, model_id: str, timeout: Optional[float] = None) -> int:
        with self._get_connection('count_examples', model_id, timeout) as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT COUNT(*) AS n FROM examples WHERE model_id = ?',
                (model_id,)
            )
            return int(cursor.fetchone()['n'])

    def clear_examples(self, model_id: str, timeout: Optional[float] = None) -> int:
        with self._get_connection('clear_examples', model_id, timeout) as conn:
            cursor = conn.cursor()
            cursor.execute('DELETE FROM examples WHERE model_id = ?', (model_id,))
            cleared = cursor.rowcount
            if cleared:
                logger.info(f"Cleared {cleared} example(s) of model {model_id}")
            return cleared
