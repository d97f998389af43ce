"""
config.py
~~~~~~~~~

Environment-driven settings for the API server and model registry.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .network import DEFAULT_LEARNING_RATE, TrainingOptions
from .persistence import DEFAULT_DB_PATH, DEFAULT_TIMEOUT
from .registry import RegistryConfig

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    value = env.get(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class Settings:
    """Runtime settings, normally read from the environment."""
    db_path: str = DEFAULT_DB_PATH
    log_level: str = 'INFO'
    is_production: bool = False
    port: int = 8000
    async_mode: str = 'gevent'
    learning_rate: float = DEFAULT_LEARNING_RATE
    mini_batch_size: Optional[int] = None
    keep_best: bool = False
    warm_start: bool = False
    io_timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Recognised variables: ``FANNSTORE_DB_PATH``, ``LOG_LEVEL``,
        ``FLASK_ENV`` (``production`` enables production mode), ``PORT``,
        ``SOCKETIO_ASYNC_MODE``, ``FANNSTORE_LEARNING_RATE``,
        ``FANNSTORE_MINI_BATCH_SIZE``, ``FANNSTORE_KEEP_BEST``,
        ``FANNSTORE_WARM_START`` and ``FANNSTORE_IO_TIMEOUT``.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        env = os.environ if env is None else env
        batch = env.get('FANNSTORE_MINI_BATCH_SIZE')

        return cls(
            db_path=env.get('FANNSTORE_DB_PATH', DEFAULT_DB_PATH),
            log_level=env.get('LOG_LEVEL', 'INFO').upper(),
            is_production=env.get('FLASK_ENV') == 'production',
            port=int(env.get('PORT', 8000)),
            async_mode=env.get('SOCKETIO_ASYNC_MODE', 'gevent'),
            learning_rate=float(env.get('FANNSTORE_LEARNING_RATE', DEFAULT_LEARNING_RATE)),
            mini_batch_size=int(batch) if batch else None,
            keep_best=_get_bool(env, 'FANNSTORE_KEEP_BEST', False),
            warm_start=_get_bool(env, 'FANNSTORE_WARM_START', False),
            io_timeout=float(env.get('FANNSTORE_IO_TIMEOUT', DEFAULT_TIMEOUT))
        )

    def registry_config(self) -> RegistryConfig:
        return RegistryConfig(
            training=TrainingOptions(
                learning_rate=self.learning_rate,
                mini_batch_size=self.mini_batch_size
            ),
            keep_best=self.keep_best,
            warm_start=self.warm_start,
            io_timeout=self.io_timeout
        )
