"""
kernels.py
~~~~~~~~~~

Stateless linear-algebra kernels over ``Vector`` and ``Matrix``.

Every kernel validates shapes and scalar types first and only then touches a
buffer, so a failed precondition leaves all operands untouched. Results are
freshly allocated and keep the scalar type of their inputs; matrix products
are dispatched to BLAS through numpy.

Weight matrices are laid out ``(out, in)``: ``affine`` computes ``W x + b``
and ``transpose_multiply`` computes ``W^T u`` for back-propagation.
"""

from typing import Tuple, Union

import numpy as np

from digitnet.numeric import Matrix, Scalar, Vector, require, same_dtype


# ============================================================================
# PRODUCTS
# ============================================================================

def affine(w: Matrix, x: Vector, b: Vector) -> Vector:
    """
    Compute ``y = W x + b`` in one multiply-accumulate pass.

    Args:
        w: Weight matrix of shape ``(out, in)``
        x: Input vector of length ``in``
        b: Bias vector of length ``out``

    Returns:
        Vector: New vector of length ``out``
    """
    require(w.cols == x.count, f"affine: W has {w.cols} columns but x has {x.count} elements")
    require(w.rows == b.count, f"affine: W has {w.rows} rows but b has {b.count} elements")
    same_dtype(w, x, b)

    # y starts as a copy of b and receives W x on top of it (gemv with beta=1)
    y = np.array(b.data, copy=True)
    y += w.grid.dot(x.data)
    return Vector.adopt(y)


def matrix_vector(w: Matrix, x: Vector) -> Vector:
    """Compute ``W x``."""
    require(w.cols == x.count, f"matrix * vector: {w.cols} columns vs {x.count} elements")
    same_dtype(w, x)
    return Vector.adopt(w.grid.dot(x.data))


def vector_matrix(v: Vector, m: Matrix) -> Vector:
    """Compute the row-vector product ``v M``."""
    require(v.count == m.rows, f"vector * matrix: {v.count} elements vs {m.rows} rows")
    same_dtype(v, m)
    return Vector.adopt(v.data.dot(m.grid))


def matrix_matrix(a: Matrix, b: Matrix) -> Matrix:
    """Compute ``A B``."""
    require(a.cols == b.rows, f"matrix * matrix: {a.cols} columns vs {b.rows} rows")
    same_dtype(a, b)
    return Matrix.adopt(a.grid.dot(b.grid), a.rows, b.cols)


def transpose_multiply(w: Matrix, u: Vector) -> Vector:
    """
    Compute ``v = W^T u`` without materializing ``W^T``.

    Equivalent to accumulating ``v += u[j] * W[j, :]`` over every output
    row ``j``; numpy evaluates it as a single transposed gemv.
    """
    require(u.count == w.rows, f"transpose_multiply: W has {w.rows} rows but u has {u.count} elements")
    same_dtype(w, u)
    return Vector.adopt(u.data.dot(w.grid))


def outer_product(a: Vector, b: Vector) -> Matrix:
    """``M[i][j] = a[i] * b[j]``; the operands may differ in length."""
    same_dtype(a, b)
    return Matrix.adopt(np.outer(a.data, b.data), a.count, b.count)


def inner_product(a: Vector, b: Vector) -> float:
    require(a.count == b.count, f"inner_product: {a.count} vs {b.count} elements")
    same_dtype(a, b)
    return float(a.data.dot(b.data))


# ============================================================================
# ELEMENTWISE
# ============================================================================

def add(a: Vector, b: Vector) -> Vector:
    require(a.count == b.count, f"add: {a.count} vs {b.count} elements")
    same_dtype(a, b)
    return Vector.adopt(a.data + b.data)


def subtract(a: Vector, b: Vector) -> Vector:
    require(a.count == b.count, f"subtract: {a.count} vs {b.count} elements")
    same_dtype(a, b)
    return Vector.adopt(a.data - b.data)


def scale(a: Vector, scalar: Scalar) -> Vector:
    return Vector.adopt(a.data * a.dtype.type(scalar))


def hadamard(a: Vector, b: Vector) -> None:
    """In-place Hadamard product: ``a[i] *= b[i]``."""
    require(a.count == b.count, f"hadamard: {a.count} vs {b.count} elements")
    same_dtype(a, b)
    np.multiply(a.data, b.data, out=a.data)


def scale_and_add(a: Vector, scalar: Scalar, c: Vector) -> Vector:
    """Return ``a * scalar + c`` as a new vector."""
    require(a.count == c.count, f"scale_and_add: {a.count} vs {c.count} elements")
    same_dtype(a, c)
    result = np.array(c.data, copy=True)
    result += a.dtype.type(scalar) * a.data
    return Vector.adopt(result)


def scale_and_add_in_place(a: Vector, scalar: Scalar,
                           target: Union[Vector, np.ndarray]) -> None:
    """
    Accumulate ``target[i] += scalar * a[i]`` in place.

    This is the single primitive behind every weight and bias update.
    ``target`` is either a ``Vector`` or a writable 1-D view into another
    buffer, such as a ``Matrix.row``.
    """
    buffer = target.data if isinstance(target, Vector) else target
    require(buffer.ndim == 1 and buffer.shape[0] == a.count,
            f"scale_and_add_in_place: {a.count} elements vs target shape {buffer.shape}")
    require(buffer.dtype == a.dtype,
            f"scale_and_add_in_place: mixed scalar types {a.dtype.name} and {buffer.dtype.name}")
    if scalar == 0:
        return
    buffer += a.dtype.type(scalar) * a.data


# ============================================================================
# ACTIVATIONS AND NORMALIZATION
# ============================================================================

def softmax(z: Vector) -> Vector:
    """
    Shift-stabilized softmax.

    ``max(z)`` is subtracted before exponentiating, so the largest exponent
    is ``exp(0) == 1`` and the sum never overflows for finite inputs.
    """
    require(z.count > 0, "softmax of an empty vector")
    shifted = z.data - z.data.max()
    exps = np.exp(shifted)
    exps /= exps.sum()
    return Vector.adopt(exps)


def relu(z: Vector) -> Vector:
    """``relu[i] = max(0, z[i])``."""
    return Vector.adopt(np.maximum(z.data, z.dtype.type(0)))


def relu_prime(z: Vector) -> Vector:
    """``1`` where ``z[i] > 0``, else ``0`` (including at exactly zero)."""
    return Vector.adopt((z.data > 0).astype(z.dtype))


def unit_vector(v: Vector) -> Vector:
    """
    Return ``v / ||v||``, or an unchanged copy when ``v`` is all zeros.

    The vector is first divided by its largest magnitude so the squares in
    the norm cannot underflow (tiny elements) or overflow (huge elements).
    """
    largest = np.abs(v.data).max() if v.count else 0
    if largest == 0:
        return v.copy()
    scaled = v.data / largest
    return Vector.adopt(scaled / np.sqrt(scaled.dot(scaled)))


# ============================================================================
# REDUCTIONS
# ============================================================================

def vector_max(v: Vector) -> float:
    require(v.count > 0, "max of an empty vector")
    return float(v.data.max())


def vector_sum(v: Vector) -> float:
    return float(v.data.sum())


def max_value_and_index(v: Vector) -> Tuple[float, int]:
    """Largest element and the index of its first occurrence."""
    require(v.count > 0, "max of an empty vector")
    index = int(np.argmax(v.data))
    return float(v.data[index]), index
