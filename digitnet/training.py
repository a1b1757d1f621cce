"""
training.py
~~~~~~~~~~~

Decode-and-train loops that drive the models from IDX datasets.

Each loop streams a dataset once, in file order, one record at a time:

- ``train_epoch`` normalizes every image to a ``[0, 1]`` float vector, pairs
  it with a one-hot target and performs one SGD step.
- ``load_labeled_images`` collects the records of a test split.

Both loops poll a ``CancellationToken`` between records, report
``(completed, total)`` progress through an optional callback, and call an
optional ``yield_func`` after every record so cooperative schedulers (gevent
in the service) can run other work.

``train_new_model`` is the ownership boundary: it trains a private copy of a
model and hands it back only after a full, uncancelled pass. A cancelled or
failed run discards the copy, so callers never observe a partially trained
model.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from digitnet.config import CLASS_COUNT
from digitnet.idx import IDXSequence
from digitnet.models import MachineLearningModel
from digitnet.numeric import Vector, resolve_dtype

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
YieldFunc = Callable[[], None]


class TrainingCancelled(Exception):
    """Raised when a loop stops because its cancellation token was set."""

    def __init__(self, completed: int):
        super().__init__(f"Cancelled after {completed} record(s)")
        self.completed = completed


class CancellationToken:
    """A flag polled once per record by the dataset loops."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, completed: int = 0) -> None:
        if self._cancelled:
            raise TrainingCancelled(completed)


@dataclass(frozen=True)
class LabeledImage:
    """Raw pixels of one digit image and its label."""
    image_bytes: bytes
    digit: int

    def to_vector(self, dtype: Any = None) -> Vector:
        return to_input_vector(self.image_bytes, dtype)


@dataclass(frozen=True)
class TrainingSummary:
    records: int
    total: int
    elapsed_time: float


@dataclass(frozen=True)
class EvaluationResult:
    correct: int
    total: int

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


# ============================================================================
# SAMPLE PREPARATION
# ============================================================================

def to_input_vector(image_bytes: bytes, dtype: Any = None) -> Vector:
    """Convert raw 0-255 pixel bytes into a vector in [0, 1] (single precision by default)."""
    pixels = np.frombuffer(image_bytes, dtype=np.uint8).astype(resolve_dtype(dtype))
    pixels /= 255
    return Vector.adopt(pixels)


def one_hot(label: int, classes: int = CLASS_COUNT, dtype: Any = None) -> Vector:
    """
    Build a target vector with a single 1 at ``label``.

    Raises:
        ValueError: If ``label`` is not a valid class index
    """
    if not 0 <= label < classes:
        raise ValueError(f"Label {label} is outside 0..{classes - 1}")
    target = Vector.zeros(classes, dtype)
    target[label] = 1
    return target


def _report(progress: Optional[ProgressCallback], completed: int, total: int) -> None:
    # Progress is a side channel: a failing listener must not stop the loop.
    if progress is None:
        return
    try:
        progress(completed, total)
    except Exception as e:
        logger.exception(f"Progress callback failed at {completed}/{total}: {e}")


def _checkpoint(cancel_token: Optional[CancellationToken], completed: int) -> None:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled(completed)


# ============================================================================
# LOOPS
# ============================================================================

def train_epoch(
    model: MachineLearningModel,
    sequence: IDXSequence,
    cancel_token: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
    yield_func: Optional[YieldFunc] = None
) -> TrainingSummary:
    """
    Train ``model`` on every record of ``sequence``, in order.

    Args:
        model: Model to update in place
        sequence: Fresh IDX sequence of images and labels
        cancel_token: Checked before each record is applied
        progress: Called with ``(completed, total)`` after each record
        yield_func: Called after each record for cooperative multitasking

    Returns:
        TrainingSummary: Records trained on, declared total and elapsed time

    Raises:
        TrainingCancelled: If the token was set; ``model`` then holds the
            updates of the records completed so far and should be discarded
    """
    total = sequence.item_count
    completed = 0
    start = time.perf_counter()

    for record in sequence:
        _checkpoint(cancel_token, completed)

        x = to_input_vector(record.image_bytes, model.dtype)
        t = one_hot(record.label, model.output_size, model.dtype)
        model.train(x, t)

        completed += 1
        _report(progress, completed, total)
        if yield_func is not None:
            yield_func()

    elapsed = time.perf_counter() - start
    if completed < total:
        logger.warning(f"Dataset ended early: {completed} of {total} declared records")
    logger.info(f"Trained on {completed} record(s) in {elapsed:.2f}s")
    return TrainingSummary(records=completed, total=total, elapsed_time=elapsed)


def load_labeled_images(
    sequence: IDXSequence,
    cancel_token: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
    yield_func: Optional[YieldFunc] = None
) -> List[LabeledImage]:
    """
    Collect every record of ``sequence`` as a ``LabeledImage``.

    Raises:
        TrainingCancelled: If the token was set before the pass finished
    """
    total = sequence.item_count
    images: List[LabeledImage] = []

    for record in sequence:
        _checkpoint(cancel_token, len(images))
        images.append(LabeledImage(image_bytes=record.image_bytes, digit=record.label))
        _report(progress, len(images), total)
        if yield_func is not None:
            yield_func()

    logger.info(f"Loaded {len(images)} labeled image(s)")
    return images


def evaluate(
    model: MachineLearningModel,
    images: List[LabeledImage],
    yield_func: Optional[YieldFunc] = None
) -> EvaluationResult:
    """
    Count how many ``images`` the model classifies correctly.

    ``yield_func`` is called after every image, as in ``train_epoch``.
    """
    correct = 0
    for image in images:
        if model.predict(image.to_vector(model.dtype)) == image.digit:
            correct += 1
        if yield_func is not None:
            yield_func()
    return EvaluationResult(correct=correct, total=len(images))


# ============================================================================
# FILE-LEVEL ENTRY POINTS
# ============================================================================

def train_new_model(
    model: MachineLearningModel,
    images_path: str,
    labels_path: str,
    cancel_token: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
    yield_func: Optional[YieldFunc] = None
) -> Tuple[MachineLearningModel, TrainingSummary]:
    """
    Train a copy of ``model`` for one epoch over an IDX file pair.

    ``model`` itself is never modified, so it can keep serving inference
    while the copy trains. The copy is returned only after a complete pass.

    Raises:
        FileNotFoundError: If a dataset file is missing
        IDXFormatError: If a dataset header is malformed
        TrainingCancelled: If the run was cancelled
    """
    candidate = model.copy()
    with IDXSequence.open(images_path, labels_path) as sequence:
        header = sequence.images_header
        if header.count_per_item != candidate.input_size:
            raise ValueError(
                f"Dataset items have {header.count_per_item} values but the model "
                f"expects {candidate.input_size} inputs"
            )
        logger.info(
            f"Training {candidate.variant} model on {sequence.item_count} record(s) "
            f"from {images_path}"
        )
        summary = train_epoch(candidate, sequence, cancel_token, progress, yield_func)
    return candidate, summary


def load_test_set(
    images_path: str,
    labels_path: str,
    cancel_token: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
    yield_func: Optional[YieldFunc] = None,
    input_size: Optional[int] = None
) -> List[LabeledImage]:
    """
    Load a labeled test split from an IDX file pair.

    Args:
        input_size: When given, the number of values every image must have

    Raises:
        FileNotFoundError: If a dataset file is missing
        IDXFormatError: If a dataset header is malformed
        ValueError: If the images do not have ``input_size`` values
        TrainingCancelled: If the load was cancelled
    """
    with IDXSequence.open(images_path, labels_path) as sequence:
        header = sequence.images_header
        if input_size is not None and header.count_per_item != input_size:
            raise ValueError(
                f"Test items have {header.count_per_item} values but models "
                f"expect {input_size} inputs"
            )
        logger.info(f"Loading {sequence.item_count} test record(s) from {images_path}")
        return load_labeled_images(sequence, cancel_token, progress, yield_func)
