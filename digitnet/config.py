"""
config.py
~~~~~~~~~

Environment-driven settings for the training service.

Every value can be overridden through an environment variable:

- ``DIGITNET_DATA_DIR``: directory holding the IDX dataset files
- ``LOG_LEVEL``: root log level (``INFO`` by default)
- ``FLASK_ENV``: ``production`` quiets third-party loggers
- ``PORT``: HTTP port for the development server
- ``DIGITNET_LEARNING_RATE``, ``DIGITNET_HIDDEN1``, ``DIGITNET_HIDDEN2``:
  defaults for newly created models
- ``DIGITNET_SEED``: weight-initialization seed (random when unset)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

TRAIN_IMAGES_FILE = 'train-images.idx3-ubyte'
TRAIN_LABELS_FILE = 'train-labels.idx1-ubyte'
TEST_IMAGES_FILE = 't10k-images.idx3-ubyte'
TEST_LABELS_FILE = 't10k-labels.idx1-ubyte'

# 28 x 28 grayscale digits, ten classes
INPUT_SIZE = 28 * 28
CLASS_COUNT = 10


@dataclass(frozen=True)
class Settings:
    data_dir: str = 'data'
    log_level: str = 'INFO'
    environment: str = 'development'
    port: int = 8000
    learning_rate: float = 0.01
    hidden1: int = 512
    hidden2: int = 256
    seed: Optional[int] = None

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'

    def train_paths(self) -> Tuple[str, str]:
        """(images, labels) paths of the training split."""
        return (os.path.join(self.data_dir, TRAIN_IMAGES_FILE),
                os.path.join(self.data_dir, TRAIN_LABELS_FILE))

    def test_paths(self) -> Tuple[str, str]:
        """(images, labels) paths of the test split."""
        return (os.path.join(self.data_dir, TEST_IMAGES_FILE),
                os.path.join(self.data_dir, TEST_LABELS_FILE))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from ``environ`` (``os.environ`` by default).

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ
        seed = env.get('DIGITNET_SEED')
        return cls(
            data_dir=env.get('DIGITNET_DATA_DIR', cls.data_dir),
            log_level=env.get('LOG_LEVEL', cls.log_level).upper(),
            environment=env.get('FLASK_ENV', cls.environment),
            port=int(env.get('PORT', cls.port)),
            learning_rate=float(env.get('DIGITNET_LEARNING_RATE', cls.learning_rate)),
            hidden1=int(env.get('DIGITNET_HIDDEN1', cls.hidden1)),
            hidden2=int(env.get('DIGITNET_HIDDEN2', cls.hidden2)),
            seed=int(seed) if seed not in (None, '') else None,
        )
