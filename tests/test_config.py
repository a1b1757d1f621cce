"""
test_config.py
~~~~~~~~~~~~~~

Unit tests for environment-driven settings.
"""

import os

import pytest

from digitnet.config import TEST_IMAGES_FILE, TRAIN_LABELS_FILE, Settings


@pytest.mark.unit
class TestSettings:
    """Test that settings are read from the environment."""

    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings == Settings()
        assert settings.seed is None
        assert settings.is_production is False

    def test_overrides(self):
        settings = Settings.from_env({
            'DIGITNET_DATA_DIR': '/srv/mnist',
            'LOG_LEVEL': 'debug',
            'FLASK_ENV': 'production',
            'PORT': '9000',
            'DIGITNET_LEARNING_RATE': '0.05',
            'DIGITNET_HIDDEN1': '300',
            'DIGITNET_HIDDEN2': '150',
            'DIGITNET_SEED': '42',
        })
        assert settings.data_dir == '/srv/mnist'
        assert settings.log_level == 'DEBUG'
        assert settings.is_production is True
        assert settings.port == 9000
        assert settings.learning_rate == 0.05
        assert (settings.hidden1, settings.hidden2) == (300, 150)
        assert settings.seed == 42

    def test_empty_seed_means_random(self):
        assert Settings.from_env({'DIGITNET_SEED': ''}).seed is None

    def test_invalid_number(self):
        with pytest.raises(ValueError):
            Settings.from_env({'PORT': 'eighty'})

    def test_split_paths(self):
        settings = Settings(data_dir='data')
        assert settings.test_paths()[0] == os.path.join('data', TEST_IMAGES_FILE)
        assert settings.train_paths()[1] == os.path.join('data', TRAIN_LABELS_FILE)
