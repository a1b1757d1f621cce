"""
test_models.py
~~~~~~~~~~~~~~

Unit tests for the single-layer and two-hidden-layer models.
"""

import math

import numpy as np
import pytest

from digitnet.models import (
    MODEL_VARIANTS,
    MachineLearningModel,
    SGDSingleLayer,
    SGDTwoHiddenLayer,
    create_model,
)
from digitnet.numeric import ShapeMismatchError, Vector
from digitnet.training import one_hot


def cross_entropy(model: MachineLearningModel, x: Vector, label: int) -> float:
    return -math.log(model.inference(x)[label])


@pytest.fixture
def sample():
    """A random input in [0, 1] with 20 features and its one-hot target."""
    rng = np.random.default_rng(7)
    x = Vector(rng.uniform(0, 1, size=20))
    return x, one_hot(3)


@pytest.fixture
def small_mlp():
    """A double-precision 4-5-3-3 network for gradient checks."""
    return SGDTwoHiddenLayer(
        input_size=4, hidden1=5, hidden2=3, output_size=3,
        learning_rate=0.01, seed=3, dtype=np.float64
    )


@pytest.mark.unit
class TestSingleLayer:
    """Test softmax regression."""

    def test_parameter_shapes(self):
        model = SGDSingleLayer(input_size=784, output_size=10, seed=0)
        assert (model.w.rows, model.w.cols) == (10, 784)
        assert model.b == Vector.zeros(10)
        assert model.layer_sizes() == [784, 10]

    def test_inference_is_a_distribution(self, sample):
        x, _ = sample
        model = SGDSingleLayer(input_size=20, output_size=10, seed=0)
        y = model.inference(x)
        assert y.count == 10
        assert abs(y.sum() - 1.0) < 1e-6
        assert np.all(y.data > 0)

    def test_training_step_decreases_loss(self, sample):
        x, t = sample
        model = SGDSingleLayer(input_size=20, output_size=10, learning_rate=0.01, seed=0)

        before = cross_entropy(model, x, 3)
        model.train(x, t)
        after = cross_entropy(model, x, 3)

        assert after < before

    def test_training_moves_prediction_towards_target(self, sample):
        x, t = sample
        model = SGDSingleLayer(input_size=20, output_size=10, learning_rate=0.5, seed=0)
        for _ in range(50):
            model.train(x, t)
        assert model.predict(x) == 3

    def test_bias_update_is_minus_learning_rate_times_error(self, sample):
        x, t = sample
        model = SGDSingleLayer(input_size=20, output_size=10, learning_rate=0.1, seed=0)
        error = model.inference(x) - t

        model.train(x, t)

        np.testing.assert_allclose(model.b.data, -0.1 * error.data, rtol=1e-5, atol=1e-7)

    def test_weight_update_is_outer_product(self, sample):
        x, t = sample
        model = SGDSingleLayer(input_size=20, output_size=10, learning_rate=0.1, seed=0)
        before = model.w.copy()
        error = model.inference(x) - t

        model.train(x, t)

        expected = before.grid - 0.1 * error.outer_product(x).grid
        np.testing.assert_allclose(model.w.grid, expected, rtol=1e-5, atol=1e-6)


@pytest.mark.unit
class TestTwoHiddenLayer:
    """Test the two-hidden-layer MLP."""

    def test_parameter_shapes(self):
        model = SGDTwoHiddenLayer(input_size=784, hidden1=32, hidden2=16, output_size=10, seed=0)
        assert (model.w1.rows, model.w1.cols) == (32, 784)
        assert (model.w2.rows, model.w2.cols) == (16, 32)
        assert (model.w3.rows, model.w3.cols) == (10, 16)
        assert model.b1 == Vector.zeros(32)
        assert model.b2 == Vector.zeros(16)
        assert model.b3 == Vector.zeros(10)
        assert model.layer_sizes() == [784, 32, 16, 10]

    def test_weights_are_he_scaled(self):
        model = SGDTwoHiddenLayer(input_size=200, hidden1=50, hidden2=20, output_size=10, seed=0)
        for w, fan_in in ((model.w1, 200), (model.w2, 50), (model.w3, 20)):
            bound = MachineLearningModel.he_std(fan_in)
            assert np.all(np.abs(w.data) <= bound + 1e-6)
            # U(-1, 1) * s has standard deviation s / sqrt(3)
            assert abs(w.data.std() - bound / math.sqrt(3)) < bound * 0.2

    def test_same_seed_gives_identical_parameters(self):
        a = SGDTwoHiddenLayer(input_size=10, hidden1=6, hidden2=4, output_size=3, seed=11)
        b = SGDTwoHiddenLayer(input_size=10, hidden1=6, hidden2=4, output_size=3, seed=11)
        assert a.w1 == b.w1
        assert a.w2 == b.w2
        assert a.w3 == b.w3

    def test_inference_is_a_distribution(self, small_mlp):
        y = small_mlp.inference(Vector([0.1, 0.5, 0.9, 0.3], dtype=np.float64))
        assert y.count == 3
        assert abs(y.sum() - 1.0) < 1e-6
        assert np.all(y.data > 0)

    def test_inference_has_no_side_effects(self, small_mlp):
        before = small_mlp.copy()
        small_mlp.inference(Vector([0.1, 0.5, 0.9, 0.3], dtype=np.float64))
        for name in ('w1', 'b1', 'w2', 'b2', 'w3', 'b3'):
            assert getattr(small_mlp, name) == getattr(before, name)

    def test_gradients_match_finite_differences(self, small_mlp):
        x = Vector([0.2, 0.7, 0.4, 0.9], dtype=np.float64)
        label = 1
        t = one_hot(label, classes=3, dtype=np.float64)
        analytic = small_mlp.gradients(x, t)
        eps = 1e-6

        for name in ('w1', 'b1', 'w2', 'b2', 'w3', 'b3'):
            parameter = getattr(small_mlp, name)
            gradient = getattr(analytic, name)
            for index in range(parameter.count):
                original = parameter[index]

                parameter[index] = original + eps
                loss_plus = cross_entropy(small_mlp, x, label)
                parameter[index] = original - eps
                loss_minus = cross_entropy(small_mlp, x, label)
                parameter[index] = original

                numeric = (loss_plus - loss_minus) / (2 * eps)
                assert abs(numeric - gradient[index]) < 1e-3, (
                    f"{name}[{index}]: numeric {numeric} vs analytic {gradient[index]}"
                )

    def test_training_step_applies_gradients(self, small_mlp):
        x = Vector([0.2, 0.7, 0.4, 0.9], dtype=np.float64)
        t = one_hot(2, classes=3, dtype=np.float64)
        before = small_mlp.copy()
        gradients = before.gradients(x, t)

        small_mlp.train(x, t)

        for name in ('w1', 'b1', 'w2', 'b2', 'w3', 'b3'):
            expected = getattr(before, name).data - 0.01 * getattr(gradients, name).data
            np.testing.assert_allclose(getattr(small_mlp, name).data, expected, rtol=1e-9, atol=1e-12)

    def test_training_step_decreases_loss(self, small_mlp):
        x = Vector([0.2, 0.7, 0.4, 0.9], dtype=np.float64)
        t = one_hot(0, classes=3, dtype=np.float64)
        before = cross_entropy(small_mlp, x, 0)
        small_mlp.train(x, t)
        assert cross_entropy(small_mlp, x, 0) < before


@pytest.mark.unit
class TestModelContract:
    """Test behaviour shared by both variants."""

    @pytest.mark.parametrize('variant', sorted(MODEL_VARIANTS))
    def test_copy_shares_no_buffers(self, variant, sample):
        x, t = sample
        options = {'hidden1': 8, 'hidden2': 4} if variant == 'two_hidden_layer' else {}
        model = create_model(variant, input_size=20, output_size=10, seed=1, **options)
        clone = model.copy()

        clone.train(x, t)

        assert clone.inference(x) != model.inference(x)
        assert clone.describe() == model.describe()

    @pytest.mark.parametrize('variant', sorted(MODEL_VARIANTS))
    def test_wrong_input_length_is_rejected(self, variant):
        options = {'hidden1': 8, 'hidden2': 4} if variant == 'two_hidden_layer' else {}
        model = create_model(variant, input_size=20, output_size=10, seed=1, **options)
        with pytest.raises(ShapeMismatchError):
            model.inference(Vector.zeros(19))
        with pytest.raises(ShapeMismatchError):
            model.train(Vector.zeros(20), Vector.zeros(9))

    def test_category_is_argmax(self):
        model = SGDSingleLayer(input_size=2, output_size=3, seed=0)
        assert model.category(Vector([0.1, 0.7, 0.2])) == 1

    def test_describe(self):
        model = create_model('single_layer', input_size=784, learning_rate=0.05, seed=0)
        assert model.describe() == {
            'variant': 'single_layer',
            'layer_sizes': [784, 10],
            'learning_rate': 0.05,
            'dtype': 'float32',
        }

    def test_unknown_variant(self):
        with pytest.raises(ValueError):
            create_model('convolutional')

    def test_hidden_sizes_do_not_apply_to_single_layer(self):
        with pytest.raises(ValueError):
            create_model('single_layer', hidden1=10)

    def test_invalid_learning_rate(self):
        with pytest.raises(ValueError):
            SGDSingleLayer(input_size=4, learning_rate=0)

    def test_he_std(self):
        assert MachineLearningModel.he_std(2) == 1.0
        assert abs(MachineLearningModel.he_std(784) - math.sqrt(2 / 784)) < 1e-12
