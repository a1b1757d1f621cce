"""
conftest.py
~~~~~~~~~~~

Shared fixtures for building small IDX datasets.
"""

import os

import numpy as np
import pytest

from digitnet.config import (
    TEST_IMAGES_FILE,
    TEST_LABELS_FILE,
    TRAIN_IMAGES_FILE,
    TRAIN_LABELS_FILE,
)
from digitnet.idx import write_idx


def make_digits(count: int, seed: int = 0, side: int = 28):
    """Random ``count`` images of ``side`` x ``side`` pixels with labels 0-9."""
    rng = np.random.default_rng(seed)
    images = rng.integers(0, 256, size=(count, side, side), dtype=np.uint8)
    labels = (np.arange(count) % 10).astype(np.uint8)
    return images, labels


def write_split(directory, images_file: str, labels_file: str,
                images: np.ndarray, labels: np.ndarray):
    images_path = os.path.join(str(directory), images_file)
    labels_path = os.path.join(str(directory), labels_file)
    with open(images_path, 'wb') as f:
        write_idx(f, images)
    with open(labels_path, 'wb') as f:
        write_idx(f, labels)
    return images_path, labels_path


@pytest.fixture
def tiny_dataset(tmp_path):
    """Twelve 2x3 images with labels 0-9, written as an IDX file pair."""
    images = np.arange(12 * 6, dtype=np.uint8).reshape(12, 2, 3)
    labels = (np.arange(12) % 10).astype(np.uint8)
    paths = write_split(tmp_path, 'images.idx3-ubyte', 'labels.idx1-ubyte', images, labels)
    return paths, images, labels


@pytest.fixture
def mnist_dir(tmp_path):
    """A data directory holding small train (30) and test (20) MNIST-shaped splits."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    write_split(data_dir, TRAIN_IMAGES_FILE, TRAIN_LABELS_FILE, *make_digits(30, seed=1))
    write_split(data_dir, TEST_IMAGES_FILE, TEST_LABELS_FILE, *make_digits(20, seed=2))
    return str(data_dir)
