"""
test_numeric.py
~~~~~~~~~~~~~~~

Unit tests for the Vector and Matrix buffers.
"""

import os
import subprocess
import sys

import numpy as np
import pytest

from digitnet.numeric import Matrix, ShapeMismatchError, Vector


@pytest.mark.unit
class TestVectorConstruction:
    """Test the ways a vector can be built."""

    def test_from_sequence(self):
        vector = Vector([1, 2, 3])
        assert vector.count == 3
        assert len(vector) == 3
        assert vector.dtype == np.float32
        assert list(vector) == [1.0, 2.0, 3.0]

    def test_copy_is_deep(self):
        original = Vector([1, 2])
        copy = Vector(original)
        copy[0] = 9

        assert original == Vector([1, 2])
        assert copy == Vector([9, 2])

    def test_copy_method_is_deep(self):
        original = Vector([1, 2])
        copy = original.copy()
        copy[1] = 7
        assert original[1] == 2

    def test_repeating(self):
        vector = Vector.repeating(0.5, count=4)
        assert vector == Vector([0.5, 0.5, 0.5, 0.5])

    def test_double_precision(self):
        vector = Vector([1, 2], dtype=np.float64)
        assert vector.dtype == np.float64

    def test_unsupported_dtype_rejected(self):
        with pytest.raises(ValueError):
            Vector([1, 2], dtype=np.int32)

    def test_nested_sequence_rejected(self):
        with pytest.raises(ShapeMismatchError):
            Vector([[1, 2], [3, 4]])


@pytest.mark.unit
class TestVectorAccess:
    """Test element access, equality and rendering."""

    def test_subscript_getter(self):
        vector = Vector([1, 2])
        assert vector[0] == 1
        assert vector[1] == 2

    def test_subscript_setter(self):
        vector = Vector([1, 2])
        vector[1] = 3
        assert vector == Vector([1, 3])

    def test_vectors_of_different_sizes_are_unequal(self):
        assert Vector([1, 2]) != Vector([1, 2, 3])

    def test_equality_ignores_identity(self):
        assert Vector([1, 2]) == Vector([1, 2])

    def test_comparison_with_other_types(self):
        assert Vector([1, 2]) != [1, 2]

    def test_description(self):
        assert repr(Vector([1, 2])) == "Vector<float32>([1.0, 2.0])"

    def test_description_uses_shortest_form(self):
        assert str(Vector([0.1, 2.5])) == "Vector<float32>([0.1, 2.5])"
        assert str(Vector([0.1], dtype=np.float64)) == "Vector<float64>([0.1])"

    def test_row_vector_times_matrix_operator(self):
        result = Vector([1, 2, 3]) * Matrix([[1, 4], [2, 5], [3, 6]])
        assert result == Vector([14, 32])


@pytest.mark.unit
class TestMatrix:
    """Test matrix construction, storage and rendering."""

    def test_nested_rows_and_flat_elements_agree(self):
        from_rows = Matrix([[1, 2], [3, 4]])
        from_flat = Matrix.from_elements([1, 2, 3, 4], rows=2, cols=2)
        assert from_rows == from_flat

    def test_ragged_rows_rejected(self):
        with pytest.raises(ShapeMismatchError):
            Matrix([[1, 2], [3]])

    def test_flat_elements_must_fill_shape(self):
        with pytest.raises(ShapeMismatchError):
            Matrix.from_elements([1, 2, 3], rows=2, cols=2)

    def test_counting(self):
        matrix = Matrix([[1, 2, 3], [4, 5, 6]])
        assert matrix.rows == 2
        assert matrix.cols == 3
        assert matrix.count == 6
        assert len(matrix.data) == matrix.rows * matrix.cols

    def test_row_major_subscripting(self):
        matrix = Matrix([[1, 2], [3, 4]])
        assert [matrix[i] for i in range(4)] == [1, 2, 3, 4]

    def test_row_view_writes_through(self):
        matrix = Matrix([[1, 2], [3, 4]])
        matrix.row(1)[0] = 30
        assert matrix[2] == 30

    def test_repeating(self):
        assert Matrix.repeating(0.25, rows=2, cols=1) == Matrix([[0.25], [0.25]])

    def test_copy_is_deep(self):
        matrix = Matrix([[1, 2], [3, 4]])
        copy = matrix.copy()
        copy[0] = 100
        assert matrix[0] == 1

    def test_shapes_must_match_for_equality(self):
        assert Matrix([[1, 2, 3, 4]]) != Matrix([[1, 2], [3, 4]])

    def test_description(self):
        expected = (
            "Matrix<float32>([\n"
            "    [1.0, 2.0],\n"
            "    [3.0, 4.0]\n"
            "])"
        )
        assert repr(Matrix([[1, 2], [3, 4]])) == expected

    def test_matrix_times_vector_operator(self):
        matrix = Matrix([[1, 4], [2, 5], [3, 6]])
        assert matrix * Vector([1, 2]) == Vector([9, 12, 15])

    def test_matrix_times_matrix_operator(self):
        lhs = Matrix([[1, 2, 3], [4, 5, 6]])
        rhs = Matrix([[1, 4], [2, 5], [3, 6]])
        assert lhs * rhs == Matrix([[14, 32], [32, 77]])


@pytest.mark.unit
class TestImports:
    """Test that the buffers and kernels import cleanly in either order."""

    @pytest.mark.parametrize('module', ['digitnet.numeric', 'digitnet.kernels'])
    def test_import_first(self, module):
        code = (
            f"import {module}\n"
            "from digitnet.numeric import Vector\n"
            "assert Vector([1, 2]) + Vector([3, 4]) == Vector([4, 6])\n"
        )
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        result = subprocess.run([sys.executable, '-c', code], cwd=root,
                                capture_output=True, text=True)
        assert result.returncode == 0, result.stderr
