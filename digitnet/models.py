"""
models.py
~~~~~~~~~

Trainable classifiers sharing one capability contract.

Two variants exist and no others are planned:

- ``SGDSingleLayer``: softmax regression, ``y = softmax(W x + b)``.
- ``SGDTwoHiddenLayer``: a ReLU multilayer perceptron with two hidden
  layers and a softmax output.

Both perform one stochastic gradient descent step per ``train`` call using
the softmax + cross-entropy gradient ``y - t``, and both apply every
parameter update through ``kernels.scale_and_add_in_place``. Weight matrices
have shape ``(out, in)``.

A model's parameters are owned by the model and mutated only by ``train``.
``inference`` has no side effects, so a model that is no longer being trained
can be read from any number of callers.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

import numpy as np

from digitnet import kernels
from digitnet.numeric import Matrix, Vector, require, resolve_dtype


class MachineLearningModel(ABC):
    """Train/infer contract implemented by every model variant."""

    variant: str = ''

    def __init__(self, input_size: int, output_size: int,
                 learning_rate: float, dtype: Any = None):
        if input_size < 1 or output_size < 1:
            raise ValueError(
                f"Layer sizes must be positive, got input={input_size}, output={output_size}"
            )
        if learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}")

        self.input_size = input_size
        self.output_size = output_size
        self.learning_rate = learning_rate
        self.dtype = resolve_dtype(dtype)

    @abstractmethod
    def train(self, x: Vector, t: Vector) -> None:
        """
        Perform one SGD step for a single sample.

        Args:
            x: Input vector of length ``input_size``
            t: One-hot target vector of length ``output_size``
        """

    @abstractmethod
    def inference(self, x: Vector) -> Vector:
        """
        Compute the class-probability vector for one input.

        Args:
            x: Input vector of length ``input_size``

        Returns:
            Vector: ``output_size`` probabilities summing to 1
        """

    @abstractmethod
    def copy(self) -> 'MachineLearningModel':
        """Return a deep copy that shares no buffers with this model."""

    @abstractmethod
    def layer_sizes(self) -> List[int]:
        """Sizes of every layer, input first."""

    def category(self, y: Vector) -> int:
        """Index of the most probable class in ``y``."""
        return y.argmax()

    def predict(self, x: Vector) -> int:
        return self.category(self.inference(x))

    def describe(self) -> Dict[str, Any]:
        """Architecture summary for reporting."""
        return {
            'variant': self.variant,
            'layer_sizes': self.layer_sizes(),
            'learning_rate': self.learning_rate,
            'dtype': self.dtype.name,
        }

    @staticmethod
    def he_std(fan_in: int) -> float:
        """He scale ``sqrt(2 / fan_in)`` for a ReLU layer with ``fan_in`` inputs."""
        return math.sqrt(2.0 / fan_in)

    def _check_sample(self, x: Vector, t: Optional[Vector] = None) -> None:
        require(
            x.count == self.input_size,
            f"{type(self).__name__} expects {self.input_size} inputs, got {x.count}"
        )
        require(x.dtype == self.dtype,
                f"{type(self).__name__} expects {self.dtype.name} input, got {x.dtype.name}")
        if t is not None:
            require(
                t.count == self.output_size,
                f"{type(self).__name__} expects {self.output_size} targets, got {t.count}"
            )
            require(t.dtype == self.dtype,
                    f"{type(self).__name__} expects {self.dtype.name} target, got {t.dtype.name}")


def he_uniform(rng: np.random.Generator, rows: int, cols: int, dtype: np.dtype) -> Matrix:
    """
    Draw a ``(rows, cols)`` weight matrix from ``U(-1, 1) * sqrt(2 / cols)``.

    ``cols`` is the layer's fan-in.
    """
    scale = MachineLearningModel.he_std(cols)
    values = rng.uniform(-1.0, 1.0, size=rows * cols) * scale
    return Matrix.adopt(values.astype(dtype), rows, cols)


def row_wise_update(w: Matrix, delta: Vector, prev_activation: Vector,
                    learning_rate: float) -> None:
    """
    Apply ``W[j, :] -= lr * delta[j] * prev_activation[:]`` for every row ``j``.

    This is the outer-product update ``W -= lr * (delta x prev_activation)``
    written one row at a time so no gradient matrix is allocated.
    """
    require(w.rows == delta.count and w.cols == prev_activation.count,
            f"row_wise_update: W is {w.rows} x {w.cols}, "
            f"delta has {delta.count}, activation has {prev_activation.count}")
    for j in range(delta.count):
        step = -learning_rate * delta[j]
        if step:
            kernels.scale_and_add_in_place(prev_activation, step, w.row(j))


# ============================================================================
# SINGLE LAYER
# ============================================================================

class SGDSingleLayer(MachineLearningModel):
    """Softmax regression trained one sample at a time."""

    variant = 'single_layer'

    def __init__(self, input_size: int, output_size: int = 10,
                 learning_rate: float = 0.01, seed: Optional[int] = None,
                 dtype: Any = None):
        super().__init__(input_size, output_size, learning_rate, dtype)
        rng = np.random.default_rng(seed)
        self.w = he_uniform(rng, output_size, input_size, self.dtype)
        self.b = Vector.zeros(output_size, self.dtype)

    def train(self, x: Vector, t: Vector) -> None:
        self._check_sample(x, t)

        y = kernels.softmax(kernels.affine(self.w, x, self.b))
        error = kernels.subtract(y, t)

        row_wise_update(self.w, error, x, self.learning_rate)
        kernels.scale_and_add_in_place(error, -self.learning_rate, self.b)

    def inference(self, x: Vector) -> Vector:
        self._check_sample(x)
        return kernels.softmax(kernels.affine(self.w, x, self.b))

    def copy(self) -> 'SGDSingleLayer':
        clone = type(self).__new__(type(self))
        MachineLearningModel.__init__(
            clone, self.input_size, self.output_size, self.learning_rate, self.dtype
        )
        clone.w = self.w.copy()
        clone.b = self.b.copy()
        return clone

    def layer_sizes(self) -> List[int]:
        return [self.input_size, self.output_size]


# ============================================================================
# TWO HIDDEN LAYERS
# ============================================================================

@dataclass
class ForwardPass:
    """Intermediate values of one forward pass, kept for back-propagation."""
    z1: Vector
    a1: Vector
    z2: Vector
    a2: Vector
    z3: Vector
    y: Vector


@dataclass
class Gradients:
    """Closed-form gradients of the cross-entropy loss for one sample."""
    w1: Matrix
    b1: Vector
    w2: Matrix
    b2: Vector
    w3: Matrix
    b3: Vector


class SGDTwoHiddenLayer(MachineLearningModel):
    """
    Two-hidden-layer MLP with ReLU activations and a softmax output.

    Hidden sizes between 256 and 512 (first) and 128 and 256 (second) with a
    learning rate of 0.01 train well on MNIST.
    """

    variant = 'two_hidden_layer'

    def __init__(self, input_size: int, hidden1: int = 512, hidden2: int = 256,
                 output_size: int = 10, learning_rate: float = 0.01,
                 seed: Optional[int] = None, dtype: Any = None):
        super().__init__(input_size, output_size, learning_rate, dtype)
        if hidden1 < 1 or hidden2 < 1:
            raise ValueError(
                f"Hidden layer sizes must be positive, got {hidden1} and {hidden2}"
            )
        self.hidden1 = hidden1
        self.hidden2 = hidden2

        rng = np.random.default_rng(seed)
        self.w1 = he_uniform(rng, hidden1, input_size, self.dtype)
        self.b1 = Vector.zeros(hidden1, self.dtype)
        self.w2 = he_uniform(rng, hidden2, hidden1, self.dtype)
        self.b2 = Vector.zeros(hidden2, self.dtype)
        self.w3 = he_uniform(rng, output_size, hidden2, self.dtype)
        self.b3 = Vector.zeros(output_size, self.dtype)

    def forward(self, x: Vector) -> ForwardPass:
        self._check_sample(x)
        z1 = kernels.affine(self.w1, x, self.b1)
        a1 = kernels.relu(z1)
        z2 = kernels.affine(self.w2, a1, self.b2)
        a2 = kernels.relu(z2)
        z3 = kernels.affine(self.w3, a2, self.b3)
        return ForwardPass(z1, a1, z2, a2, z3, kernels.softmax(z3))

    def _deltas(self, forward: ForwardPass, t: Vector) -> Tuple[Vector, Vector, Vector]:
        # Output layer (softmax + cross-entropy): delta3 = y - t
        delta3 = kernels.subtract(forward.y, t)

        # delta2 = (W3^T delta3) * relu'(z2)
        delta2 = kernels.transpose_multiply(self.w3, delta3)
        kernels.hadamard(delta2, kernels.relu_prime(forward.z2))

        # delta1 = (W2^T delta2) * relu'(z1)
        delta1 = kernels.transpose_multiply(self.w2, delta2)
        kernels.hadamard(delta1, kernels.relu_prime(forward.z1))

        return delta1, delta2, delta3

    def train(self, x: Vector, t: Vector) -> None:
        self._check_sample(x, t)
        forward = self.forward(x)
        delta1, delta2, delta3 = self._deltas(forward, t)

        lr = self.learning_rate
        row_wise_update(self.w3, delta3, forward.a2, lr)
        kernels.scale_and_add_in_place(delta3, -lr, self.b3)

        row_wise_update(self.w2, delta2, forward.a1, lr)
        kernels.scale_and_add_in_place(delta2, -lr, self.b2)

        row_wise_update(self.w1, delta1, x, lr)
        kernels.scale_and_add_in_place(delta1, -lr, self.b1)

    def gradients(self, x: Vector, t: Vector) -> Gradients:
        """Closed-form loss gradients for ``(x, t)`` without applying them."""
        self._check_sample(x, t)
        forward = self.forward(x)
        delta1, delta2, delta3 = self._deltas(forward, t)
        return Gradients(
            w1=kernels.outer_product(delta1, x), b1=delta1,
            w2=kernels.outer_product(delta2, forward.a1), b2=delta2,
            w3=kernels.outer_product(delta3, forward.a2), b3=delta3,
        )

    def inference(self, x: Vector) -> Vector:
        return self.forward(x).y

    def copy(self) -> 'SGDTwoHiddenLayer':
        clone = type(self).__new__(type(self))
        MachineLearningModel.__init__(
            clone, self.input_size, self.output_size, self.learning_rate, self.dtype
        )
        clone.hidden1 = self.hidden1
        clone.hidden2 = self.hidden2
        for name in ('w1', 'b1', 'w2', 'b2', 'w3', 'b3'):
            setattr(clone, name, getattr(self, name).copy())
        return clone

    def layer_sizes(self) -> List[int]:
        return [self.input_size, self.hidden1, self.hidden2, self.output_size]


# ============================================================================
# FACTORY
# ============================================================================

MODEL_VARIANTS: Dict[str, Type[MachineLearningModel]] = {
    SGDSingleLayer.variant: SGDSingleLayer,
    SGDTwoHiddenLayer.variant: SGDTwoHiddenLayer,
}


def create_model(variant: str, input_size: int = 784, output_size: int = 10,
                 **options: Any) -> MachineLearningModel:
    """
    Build a model by variant name.

    Args:
        variant: ``'single_layer'`` or ``'two_hidden_layer'``
        input_size: Input vector length (784 for MNIST)
        output_size: Number of classes
        **options: Variant keyword arguments (``learning_rate``, ``seed``,
            ``hidden1``, ``hidden2``, ``dtype``)

    Raises:
        ValueError: If the variant is unknown or an option does not apply
    """
    if variant not in MODEL_VARIANTS:
        raise ValueError(
            f"Unknown model variant '{variant}'; expected one of {sorted(MODEL_VARIANTS)}"
        )
    if variant == SGDSingleLayer.variant:
        extra = {'hidden1', 'hidden2'} & set(options)
        if extra:
            raise ValueError(f"Options {sorted(extra)} do not apply to '{variant}'")
    return MODEL_VARIANTS[variant](
        input_size=input_size, output_size=output_size, **options
    )
