"""
numeric.py
~~~~~~~~~~

Owning, fixed-shape numeric buffers used throughout the engine.

``Vector`` and ``Matrix`` each own a single contiguous numpy buffer that is
allocated once at construction and never resized. Element assignment mutates
that buffer in place, while copies are always explicit and deep. Comparison
is by value: two buffers are equal when their shapes match and every element
compares equal.

Two scalar types are supported, ``numpy.float32`` (the default) and
``numpy.float64``. Binary operations require matching shapes and matching
scalar types; a mismatch raises ``ShapeMismatchError`` before any operand is
touched. Those errors mark programmer mistakes and are never caught inside
the package.

Example:
    >>> v = Vector([1, 2, 3])
    >>> v[1] = 5
    >>> v
    Vector<float32>([1.0, 5.0, 3.0])
"""

from typing import Any, Iterable, Iterator, Optional, Sequence, Tuple, Union

import numpy as np

# Scalar types a buffer may hold
SUPPORTED_DTYPES = (np.dtype(np.float32), np.dtype(np.float64))
DEFAULT_DTYPE = np.dtype(np.float32)

Scalar = Union[int, float, np.floating]


class ShapeMismatchError(ValueError):
    """Raised when operand shapes or scalar types are incompatible."""


def resolve_dtype(dtype: Any = None) -> np.dtype:
    """
    Normalize a dtype argument to one of the supported scalar types.

    Args:
        dtype: ``None`` (single precision) or anything ``numpy.dtype`` accepts

    Returns:
        numpy.dtype: float32 or float64

    Raises:
        ValueError: If the dtype is not a supported scalar type
    """
    if dtype is None:
        return DEFAULT_DTYPE
    resolved = np.dtype(dtype)
    if resolved not in SUPPORTED_DTYPES:
        raise ValueError(
            f"Unsupported scalar type {resolved}; expected float32 or float64"
        )
    return resolved


def require(condition: bool, message: str) -> None:
    """Raise ``ShapeMismatchError`` with ``message`` unless ``condition`` holds."""
    if not condition:
        raise ShapeMismatchError(message)


def format_element(value: Any, dtype: np.dtype) -> str:
    """Render one element with the shortest round-trip form for its dtype."""
    return np.format_float_positional(dtype.type(value), unique=True, trim='0')


def _kernels():
    """The kernels module, imported on first use since it builds on these types."""
    from digitnet import kernels
    return kernels


class Vector:
    """
    A one-dimensional numeric buffer of fixed length.

    Construction variants:
        Vector([1, 2, 3])                  # from a literal sequence
        Vector(other)                      # deep copy of another vector
        Vector.repeating(0.0, count=10)    # ``count`` copies of a value
    """

    __slots__ = ('_data',)

    def __init__(self, elements: Union['Vector', Iterable[Scalar]],
                 dtype: Any = None):
        if isinstance(elements, Vector):
            target = elements.dtype if dtype is None else resolve_dtype(dtype)
            data = np.array(elements._data, dtype=target, copy=True)
        else:
            data = np.array(list(elements), dtype=resolve_dtype(dtype))
            require(data.ndim == 1, f"Vector needs a flat sequence, got shape {data.shape}")
        self._data = np.ascontiguousarray(data)

    @classmethod
    def repeating(cls, value: Scalar, count: int, dtype: Any = None) -> 'Vector':
        """Create a vector holding ``count`` copies of ``value``."""
        require(count >= 0, f"count must be non-negative, got {count}")
        return cls.adopt(np.full(count, value, dtype=resolve_dtype(dtype)))

    @classmethod
    def zeros(cls, count: int, dtype: Any = None) -> 'Vector':
        """Create a zero-filled vector."""
        return cls.repeating(0, count, dtype)

    @classmethod
    def adopt(cls, array: np.ndarray) -> 'Vector':
        """
        Wrap a freshly allocated 1-D array without copying it.

        The caller hands over ownership: ``array`` must not be referenced
        anywhere else afterwards.
        """
        require(array.ndim == 1, f"Vector needs a 1-D buffer, got shape {array.shape}")
        resolve_dtype(array.dtype)
        vector = cls.__new__(cls)
        vector._data = np.ascontiguousarray(array)
        return vector

    # ------------------------------------------------------------------
    # Storage contract
    # ------------------------------------------------------------------

    @property
    def data(self) -> np.ndarray:
        """The owned backing buffer."""
        return self._data

    @property
    def count(self) -> int:
        return self._data.shape[0]

    @property
    def dtype(self) -> np.dtype:
        return self._data.dtype

    def __len__(self) -> int:
        return self.count

    def __getitem__(self, index: int) -> float:
        return float(self._data[index])

    def __setitem__(self, index: int, value: Scalar) -> None:
        self._data[index] = value

    def __iter__(self) -> Iterator[float]:
        return (float(value) for value in self._data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Vector):
            return NotImplemented
        return self.count == other.count and bool(np.array_equal(self._data, other._data))

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        elements = ', '.join(format_element(v, self.dtype) for v in self._data)
        return f"Vector<{self.dtype.name}>([{elements}])"

    def copy(self) -> 'Vector':
        return Vector(self)

    def tolist(self) -> list:
        return [float(v) for v in self._data]

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def __add__(self, other: 'Vector') -> 'Vector':
        return _kernels().add(self, other)

    def __sub__(self, other: 'Vector') -> 'Vector':
        return _kernels().subtract(self, other)

    def __mul__(self, other: Union['Matrix', Scalar]) -> 'Vector':
        if isinstance(other, Matrix):
            return _kernels().vector_matrix(self, other)
        if isinstance(other, Vector):
            return NotImplemented
        return _kernels().scale(self, other)

    # ------------------------------------------------------------------
    # Convenience wrappers over the kernels
    # ------------------------------------------------------------------

    def max(self) -> float:
        return _kernels().vector_max(self)

    def argmax(self) -> int:
        return _kernels().max_value_and_index(self)[1]

    def max_value_and_index(self) -> Tuple[float, int]:
        return _kernels().max_value_and_index(self)

    def sum(self) -> float:
        return _kernels().vector_sum(self)

    def inner_product(self, other: 'Vector') -> float:
        return _kernels().inner_product(self, other)

    def outer_product(self, other: 'Vector') -> 'Matrix':
        return _kernels().outer_product(self, other)

    def unit_vector(self) -> 'Vector':
        return _kernels().unit_vector(self)

    def softmax(self) -> 'Vector':
        return _kernels().softmax(self)

    def relu(self) -> 'Vector':
        return _kernels().relu(self)

    def relu_prime(self) -> 'Vector':
        return _kernels().relu_prime(self)

    def multiply_in_place(self, other: 'Vector') -> None:
        """Hadamard product in place: ``self[i] *= other[i]``."""
        _kernels().hadamard(self, other)

    def scaled_plus(self, scalar: Scalar, vector: 'Vector') -> 'Vector':
        """Return ``self * scalar + vector`` as a new vector."""
        return _kernels().scale_and_add(self, scalar, vector)

    def scale_and_add_into(self, scalar: Scalar,
                           target: Union['Vector', np.ndarray]) -> None:
        """Accumulate ``target += scalar * self`` in place."""
        _kernels().scale_and_add_in_place(self, scalar, target)


class Matrix:
    """
    A two-dimensional numeric buffer stored row-major in one flat array.

    Element ``(row, col)`` lives at flat index ``row * cols + col``, and
    ``rows * cols == len(data)`` always holds.
    """

    __slots__ = ('_data', '_rows', '_cols')

    def __init__(self, rows: Union['Matrix', Sequence[Sequence[Scalar]]],
                 dtype: Any = None):
        if isinstance(rows, Matrix):
            target = rows.dtype if dtype is None else resolve_dtype(dtype)
            self._rows, self._cols = rows.rows, rows.cols
            self._data = np.array(rows._data, dtype=target, copy=True)
            return

        nested = [list(row) for row in rows]
        require(len(nested) > 0, "Matrix needs at least one row")
        cols = len(nested[0])
        for index, row in enumerate(nested):
            require(
                len(row) == cols,
                f"All rows must have same number of columns "
                f"(row {index} has {len(row)}, expected {cols})"
            )
        flat = [value for row in nested for value in row]
        self._rows, self._cols = len(nested), cols
        self._data = np.array(flat, dtype=resolve_dtype(dtype))

    @classmethod
    def from_elements(cls, elements: Iterable[Scalar], rows: int, cols: int,
                      dtype: Any = None) -> 'Matrix':
        """Build a matrix from a flat row-major sequence."""
        data = np.array(list(elements), dtype=resolve_dtype(dtype))
        require(data.ndim == 1, f"Flat elements expected, got shape {data.shape}")
        require(
            rows * cols == data.shape[0],
            f"{rows} x {cols} matrix needs {rows * cols} elements, got {data.shape[0]}"
        )
        return cls.adopt(data, rows, cols)

    @classmethod
    def repeating(cls, value: Scalar, rows: int, cols: int,
                  dtype: Any = None) -> 'Matrix':
        """Create a ``rows`` x ``cols`` matrix filled with ``value``."""
        require(rows >= 0 and cols >= 0, f"Invalid shape {rows} x {cols}")
        return cls.adopt(np.full(rows * cols, value, dtype=resolve_dtype(dtype)), rows, cols)

    @classmethod
    def adopt(cls, array: np.ndarray, rows: int, cols: int) -> 'Matrix':
        """Wrap a freshly allocated buffer (flat or 2-D) without copying it."""
        require(array.size == rows * cols,
                f"{rows} x {cols} matrix needs {rows * cols} elements, got {array.size}")
        resolve_dtype(array.dtype)
        matrix = cls.__new__(cls)
        matrix._rows, matrix._cols = rows, cols
        matrix._data = np.ascontiguousarray(array).reshape(rows * cols)
        return matrix

    # ------------------------------------------------------------------
    # Storage contract
    # ------------------------------------------------------------------

    @property
    def data(self) -> np.ndarray:
        """The owned flat row-major buffer."""
        return self._data

    @property
    def grid(self) -> np.ndarray:
        """A ``(rows, cols)`` view over the flat buffer (no copy)."""
        return self._data.reshape(self._rows, self._cols)

    @property
    def rows(self) -> int:
        return self._rows

    @property
    def cols(self) -> int:
        return self._cols

    @property
    def count(self) -> int:
        return self._rows * self._cols

    @property
    def dtype(self) -> np.dtype:
        return self._data.dtype

    def __len__(self) -> int:
        return self.count

    def __getitem__(self, index: int) -> float:
        return float(self._data[index])

    def __setitem__(self, index: int, value: Scalar) -> None:
        self._data[index] = value

    def row(self, index: int) -> np.ndarray:
        """Writable view of row ``index``."""
        start = index * self._cols
        return self._data[start:start + self._cols]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return (self._rows == other._rows and self._cols == other._cols
                and bool(np.array_equal(self._data, other._data)))

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        lines = []
        for r in range(self._rows):
            row = ', '.join(format_element(v, self.dtype) for v in self.row(r))
            lines.append(f"    [{row}]")
        body = ',\n'.join(lines)
        return f"Matrix<{self.dtype.name}>([\n{body}\n])"

    def copy(self) -> 'Matrix':
        return Matrix(self)

    def tolist(self) -> list:
        return self.grid.tolist()

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def __mul__(self, other: Union['Matrix', Vector]) -> Union['Matrix', Vector]:
        if isinstance(other, Vector):
            return _kernels().matrix_vector(self, other)
        if isinstance(other, Matrix):
            return _kernels().matrix_matrix(self, other)
        return NotImplemented

    def multiplied(self, x: Vector, plus: Vector) -> Vector:
        """Affine transform ``self * x + plus``."""
        return _kernels().affine(self, x, plus)

    def transpose_multiply(self, u: Vector) -> Vector:
        """Compute ``self^T * u`` without materializing the transpose."""
        return _kernels().transpose_multiply(self, u)


def same_dtype(*operands: Optional[Union[Vector, Matrix]]) -> np.dtype:
    """Return the shared dtype of ``operands`` or raise ``ShapeMismatchError``."""
    dtypes = {operand.dtype for operand in operands if operand is not None}
    require(len(dtypes) == 1, f"Mixed scalar types: {sorted(d.name for d in dtypes)}")
    return dtypes.pop()
