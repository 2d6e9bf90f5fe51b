"""
test_network.py
~~~~~~~~~~~~~~~

Unit tests for the network engine: construction, forward pass,
backpropagation and mini-batch training.
"""

import os
import sys
import tracemalloc

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ann import network as network_module
from ann.network import (
    Network,
    open_network,
    close_network,
    quadratic_loss
)


@pytest.fixture
def small_network():
    """A 2-3-2 network with a fixed seed."""
    net = Network(2, 2, 3, 3, seed=1)
    yield net
    net.close()


@pytest.fixture
def deep_network():
    """A 3-4-4-2 network with a fixed seed."""
    net = Network(3, 2, 4, 4, seed=5)
    yield net
    net.close()


def numeric_gradient(net, param, x, y, h=1e-6):
    """Central-difference gradient of the quadratic loss w.r.t. ``param``."""
    grad = np.zeros_like(param)
    it = np.nditer(param, flags=['multi_index'])
    for _ in it:
        idx = it.multi_index
        original = param[idx]

        param[idx] = original + h
        loss_plus = quadratic_loss(net.activate(x), y)
        param[idx] = original - h
        loss_minus = quadratic_loss(net.activate(x), y)
        param[idx] = original

        grad[idx] = (loss_plus - loss_minus) / (2 * h)
    return grad


@pytest.mark.unit
class TestConstruction:
    """Layer layout, initialisation and argument checks."""

    @pytest.mark.parametrize("sizes", [
        (1, 1, 1, 3),
        (2, 3, 5, 3),
        (784, 10, 100, 4),
        (4, 2, 3, 20),
    ])
    def test_output_length_matches(self, sizes):
        input_size, output_size, hidden_size, layers = sizes
        with Network(input_size, output_size, hidden_size, layers, seed=0) as net:
            out = net.activate(np.zeros(input_size))
            assert out.shape == (output_size,)

    def test_layer_shapes(self, deep_network):
        net = deep_network
        assert net.sizes == [3, 4, 4, 2]
        assert len(net.layers) == 4

        assert net.layers[0].weight is None
        assert net.layers[0].bias is None
        assert net.layers[0].activation.shape == (3,)
        assert net.layers[0].error_signal.shape == (3,)

        assert net.layers[1].weight.shape == (4, 3)
        assert net.layers[2].weight.shape == (4, 4)
        assert net.layers[3].weight.shape == (2, 4)
        assert net.layers[3].weight_grad.shape == (2, 4)
        assert net.layers[3].bias_grad.shape == (2,)

    def test_size(self, deep_network):
        assert deep_network.size(0) == 3
        assert deep_network.size(1) == 4
        assert deep_network.size(2) == 4
        assert deep_network.size(3) == 2

    def test_biases_start_at_zero(self, deep_network):
        for layer in deep_network.layers[1:]:
            assert not layer.bias.any()
            assert not layer.bias_grad.any()
            assert not layer.weight_grad.any()

    def test_weights_within_init_range(self):
        with Network(50, 20, 30, 4, seed=3) as net:
            for layer in net.layers[1:]:
                n, m = layer.weight.shape
                r = np.sqrt(6.0 / (n * m))
                assert layer.weight.min() >= -r
                assert layer.weight.max() <= r
                assert layer.weight.std() > 0

    def test_same_seed_is_bit_identical(self):
        x = np.linspace(-1.0, 1.0, 6)
        with Network(6, 3, 5, 4, seed=42) as a, Network(6, 3, 5, 4, seed=42) as b:
            assert np.array_equal(a.activate(x), b.activate(x))

    def test_explicit_generator_matches_seed(self):
        x = np.ones(4)
        with Network(4, 2, 3, 3, seed=9) as a, \
                Network(4, 2, 3, 3, rng=np.random.default_rng(9)) as b:
            assert np.array_equal(a.activate(x), b.activate(x))

    def test_different_seeds_differ(self):
        with Network(4, 2, 3, 3, seed=1) as a, Network(4, 2, 3, 3, seed=2) as b:
            assert not np.array_equal(a.layers[1].weight, b.layers[1].weight)

    def test_buffers_not_shared_between_networks(self):
        with Network(2, 2, 2, 3, seed=1) as a, Network(2, 2, 2, 3, seed=1) as b:
            a.layers[1].weight[0, 0] = 123.0
            assert b.layers[1].weight[0, 0] != 123.0

    @pytest.mark.parametrize("layers", [2, 21, 0])
    def test_layer_count_bounds(self, layers):
        with pytest.raises(ValueError):
            Network(2, 2, 2, layers)

    @pytest.mark.parametrize("sizes", [
        (0, 1, 1),
        (1, 0, 1),
        (1, 1, 0),
        (1000001, 1, 1),
    ])
    def test_unit_bounds(self, sizes):
        with pytest.raises(ValueError):
            Network(*sizes, 3)

    def test_non_integer_sizes_rejected(self):
        with pytest.raises(ValueError):
            Network(2.5, 2, 2, 3)
        with pytest.raises(ValueError):
            Network(2, 2, 2, True)


@pytest.mark.unit
class TestLifecycle:
    """close(), context manager use and the allocation-failure boundary."""

    def test_close_is_idempotent(self):
        net = Network(2, 2, 2, 3, seed=0)
        net.close()
        net.close()
        assert net.closed

    def test_close_network_accepts_none(self):
        close_network(None)

    def test_close_network_closes(self):
        net = open_network(2, 2, 2, 3, seed=0)
        close_network(net)
        close_network(net)
        assert net.closed

    def test_use_after_close_fails(self):
        net = Network(2, 2, 2, 3, seed=0)
        net.close()
        with pytest.raises(ValueError, match="closed"):
            net.activate([0.0, 0.0])
        with pytest.raises(ValueError, match="closed"):
            net.train([[0.0, 0.0]], [[0.0, 0.0]], 0.1)

    def test_context_manager_closes(self):
        with Network(2, 2, 2, 3, seed=0) as net:
            assert not net.closed
        assert net.closed

    def test_open_network_returns_none_on_memory_error(self, monkeypatch):
        """A failed allocation releases partial state and reports failure."""
        created = []
        real_layer = network_module.Layer

        def failing_layer(size, fan_in=None):
            if len(created) == 2:
                raise MemoryError()
            layer = real_layer(size, fan_in)
            created.append(layer)
            return layer

        monkeypatch.setattr(network_module, 'Layer', failing_layer)

        assert open_network(2, 2, 2, 4, seed=0) is None
        assert len(created) == 2
        for layer in created:
            assert layer.activation is None
            assert layer.weight is None

    def test_constructor_raises_memory_error(self, monkeypatch):
        def failing_layer(size, fan_in=None):
            raise MemoryError()

        monkeypatch.setattr(network_module, 'Layer', failing_layer)
        with pytest.raises(MemoryError):
            Network(2, 2, 2, 3)

    def test_failure_while_randomizing_releases_buffers(self, monkeypatch):
        """Running out of memory after the layers exist still rolls back."""
        seen = []

        def failing_randomize(self):
            seen.extend(self.layers)
            raise MemoryError()

        monkeypatch.setattr(Network, '_randomize', failing_randomize)

        assert open_network(2, 2, 2, 3, seed=0) is None
        assert len(seen) == 3
        for layer in seen:
            assert layer.activation is None
            assert layer.weight_scratch is None

        with pytest.raises(MemoryError):
            Network(2, 2, 2, 3)

    def test_open_network_still_checks_preconditions(self):
        with pytest.raises(ValueError):
            open_network(2, 2, 2, 2)


@pytest.mark.unit
class TestForward:
    """Forward pass semantics."""

    def test_hand_computed_output(self):
        """Hidden layers are rectified, the output layer is linear."""
        with Network(2, 1, 2, 3, seed=0) as net:
            net.layers[1].weight[...] = [[1.0, 0.0], [0.0, -1.0]]
            net.layers[1].bias[...] = [0.0, 0.0]
            net.layers[2].weight[...] = [[-1.0, 5.0]]
            net.layers[2].bias[...] = [0.5]

            out = net.activate([2.0, 3.0])

            assert np.array_equal(net.layers[1].activation, [2.0, 0.0])
            assert out[0] == pytest.approx(-1.5)

    def test_input_copied_into_first_layer(self, small_network):
        x = np.array([0.3, -0.7])
        small_network.activate(x)
        assert np.array_equal(small_network.layers[0].activation, x)
        x[0] = 100.0
        assert small_network.layers[0].activation[0] == 0.3

    def test_output_is_read_only_view_of_buffer(self, small_network):
        out = small_network.activate([1.0, 1.0])
        assert not out.flags.writeable
        assert np.shares_memory(out, small_network.layers[-1].activation)

    def test_output_overwritten_by_next_call(self, small_network):
        small_network.layers[1].weight[...] = [[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]]
        first = small_network.activate([1.0, 2.0])
        saved = first.copy()
        small_network.activate([-4.0, 0.5])
        assert not np.array_equal(first, saved)

    def test_infer_alias(self, small_network):
        a = small_network.activate([0.1, 0.2]).copy()
        b = small_network.infer([0.1, 0.2])
        assert np.array_equal(a, b)

    def test_wrong_input_size(self, small_network):
        with pytest.raises(ValueError):
            small_network.activate([1.0, 2.0, 3.0])

    def test_none_input(self, small_network):
        with pytest.raises(ValueError):
            small_network.activate(None)


@pytest.mark.unit
class TestBackprop:
    """Error signals and gradient accumulation."""

    def test_output_error_is_activation_minus_target(self, small_network):
        out = small_network.activate([0.4, -0.1]).copy()
        small_network.zero_grad()
        small_network.backprop([1.0, 0.0])
        assert np.allclose(small_network.layers[-1].error_signal, out - [1.0, 0.0])

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_gradient_matches_finite_difference(self, seed):
        x = np.array([0.6, -0.4])
        y = np.array([1.0, 0.0])
        with Network(2, 2, 3, 3, seed=seed) as net:
            net.zero_grad()
            net.activate(x)
            net.backprop(y)

            for layer in net.layers[1:]:
                analytic_w = layer.weight_grad.copy()
                analytic_b = layer.bias_grad.copy()
                assert np.allclose(
                    analytic_w, numeric_gradient(net, layer.weight, x, y),
                    atol=1e-4
                )
                assert np.allclose(
                    analytic_b, numeric_gradient(net, layer.bias, x, y),
                    atol=1e-4
                )

    def test_gradient_check_deep(self, deep_network):
        x = np.array([0.2, 0.9, -0.5])
        y = np.array([0.0, 1.0])
        deep_network.zero_grad()
        deep_network.activate(x)
        deep_network.backprop(y)

        analytic = [layer.weight_grad.copy() for layer in deep_network.layers[1:]]
        for grad, layer in zip(analytic, deep_network.layers[1:]):
            assert np.allclose(
                grad, numeric_gradient(deep_network, layer.weight, x, y),
                atol=1e-4
            )

    def test_backprop_accumulates(self, small_network):
        x, y = [0.5, 0.5], [1.0, -1.0]
        small_network.zero_grad()
        small_network.activate(x)
        small_network.backprop(y)
        once = small_network.layers[1].weight_grad.copy()

        small_network.activate(x)
        small_network.backprop(y)
        assert np.allclose(small_network.layers[1].weight_grad, 2 * once)

        small_network.zero_grad()
        assert not small_network.layers[1].weight_grad.any()

    def test_backprop_does_not_change_weights(self, small_network):
        before = [layer.weight.copy() for layer in small_network.layers[1:]]
        small_network.activate([1.0, 1.0])
        small_network.backprop([0.0, 0.0])
        for w, layer in zip(before, small_network.layers[1:]):
            assert np.array_equal(w, layer.weight)

    def test_relu_masks_inactive_hidden_units(self):
        """A hidden unit with negative pre-activation passes no error back."""
        with Network(2, 2, 3, 4, seed=4) as net:
            x = np.array([1.0, 1.0])

            # Make the first unit of both hidden layers strictly negative
            net.layers[1].weight[0] = [-1.0, -1.0]
            net.layers[1].bias[0] = -0.5
            net.layers[2].weight[0] = [-1.0, -1.0, -1.0]
            net.layers[2].bias[0] = -0.5

            net.zero_grad()
            net.activate(x)
            assert net.layers[1].activation[0] == 0.0
            assert net.layers[2].activation[0] == 0.0

            net.backprop([1.0, -1.0])

            assert net.layers[2].error_signal[0] == 0.0
            assert net.layers[1].error_signal[0] == 0.0
            assert not net.layers[2].weight_grad[0].any()
            assert not net.layers[1].weight_grad[0].any()
            assert net.layers[1].bias_grad[0] == 0.0

            # Layer 1's error ignores the masked unit of layer 2
            d2 = net.layers[2].error_signal
            expected = net.layers[2].weight[1:].T @ d2[1:]
            expected[net.layers[1].activation <= 0] = 0.0
            assert np.allclose(net.layers[1].error_signal, expected)

    def test_wrong_target_size(self, small_network):
        small_network.activate([0.0, 0.0])
        with pytest.raises(ValueError):
            small_network.backprop([1.0])


@pytest.mark.unit
class TestTrain:
    """Mini-batch gradient-descent updates."""

    def test_update_is_scaled_gradient(self, small_network):
        x = np.array([[0.3, 0.8], [-0.2, 0.4]])
        y = np.array([[1.0, 0.0], [0.0, 1.0]])
        eta = 0.5

        before = [layer.weight.copy() for layer in small_network.layers[1:]]
        bias_before = [layer.bias.copy() for layer in small_network.layers[1:]]

        small_network.zero_grad()
        for i in range(2):
            small_network.activate(x[i])
            small_network.backprop(y[i])
        grads = [layer.weight_grad.copy() for layer in small_network.layers[1:]]
        bias_grads = [layer.bias_grad.copy() for layer in small_network.layers[1:]]

        small_network.train(x, y, eta)

        for w0, g, layer in zip(before, grads, small_network.layers[1:]):
            assert np.allclose(layer.weight, w0 - (eta / 2) * g)
        for b0, g, layer in zip(bias_before, bias_grads, small_network.layers[1:]):
            assert np.allclose(layer.bias, b0 - (eta / 2) * g)

    def test_loss_non_increasing(self):
        x = np.array([0.5, -0.2, 0.1])
        y = np.array([0.3, -0.1])
        with Network(3, 2, 4, 3, seed=11) as net:
            # Keep every hidden unit well inside its linear region
            net.layers[1].weight[...] = np.abs(net.layers[1].weight)
            net.layers[1].bias[...] = 0.5

            losses = []
            for _ in range(50):
                losses.append(quadratic_loss(net.activate(x), y))
                net.train(x, y, 0.1)
            losses.append(quadratic_loss(net.activate(x), y))

        for prev, cur in zip(losses, losses[1:]):
            assert cur <= prev + 1e-12
        assert losses[-1] < losses[0]

    def test_batch_averaging(self):
        """k=1 on s equals k=2 on [s, s] at the same learning rate."""
        x = np.array([0.7, -0.3])
        y = np.array([0.0, 1.0])
        with Network(2, 2, 3, 3, seed=8) as a, Network(2, 2, 3, 3, seed=8) as b:
            a.train([x], [y], 0.1, 1)
            b.train([x, x], [y, y], 0.1, 2)
            for la, lb in zip(a.layers[1:], b.layers[1:]):
                assert np.allclose(la.weight, lb.weight, rtol=0, atol=1e-12)
                assert np.allclose(la.bias, lb.bias, rtol=0, atol=1e-12)

    def test_flat_batch_accepted(self, small_network):
        x = [0.1, 0.2, 0.3, 0.4]
        y = [1.0, 0.0, 0.0, 1.0]
        small_network.train(x, y, 0.1, 2)

    def test_batch_size_inferred(self, small_network):
        before = small_network.layers[1].weight.copy()
        small_network.train(np.ones((3, 2)), np.zeros((3, 2)), 0.1)
        assert not np.array_equal(before, small_network.layers[1].weight)

    def test_train_resets_gradients_each_call(self):
        x, y = [0.5, 0.1], [1.0, 0.0]
        with Network(2, 2, 3, 3, seed=2) as a, Network(2, 2, 3, 3, seed=2) as b:
            # Leftover gradients must not leak into the update
            b.activate(x)
            b.backprop(y)
            a.train([x], [y], 0.2)
            b.train([x], [y], 0.2)
            assert np.array_equal(a.layers[1].weight, b.layers[1].weight)

    @pytest.mark.parametrize("k", [0, 129])
    def test_batch_size_bounds(self, k):
        with Network(1, 1, 1, 3, seed=0) as net:
            x = np.zeros((max(k, 1), 1))
            y = np.zeros((max(k, 1), 1))
            with pytest.raises(ValueError):
                net.train(x, y, 0.1, k)

    def test_batch_of_129_inferred_rejected(self):
        with Network(1, 1, 1, 3, seed=0) as net:
            with pytest.raises(ValueError):
                net.train(np.zeros((129, 1)), np.zeros((129, 1)), 0.1)

    def test_batch_of_128_accepted(self):
        with Network(1, 1, 1, 3, seed=0) as net:
            net.train(np.zeros((128, 1)), np.zeros((128, 1)), 0.1, 128)

    @pytest.mark.parametrize("eta", [0.0, -0.1, 1.5])
    def test_learning_rate_bounds(self, small_network, eta):
        with pytest.raises(ValueError):
            small_network.train([[0.0, 0.0]], [[0.0, 0.0]], eta)

    @pytest.mark.parametrize("eta", [None, "0.1", [0.1], True])
    def test_learning_rate_must_be_a_number(self, small_network, eta):
        with pytest.raises(ValueError):
            small_network.train([[0.0, 0.0]], [[0.0, 0.0]], eta)

    def test_numpy_learning_rate_accepted(self, small_network):
        small_network.train([[0.0, 0.0]], [[0.0, 0.0]], np.float32(0.5))

    def test_learning_rate_one_accepted(self, small_network):
        small_network.train([[0.0, 0.0]], [[0.0, 0.0]], 1.0)

    def test_training_step_does_not_allocate_weight_sized_buffers(self):
        """After the first step, training reuses the buffers built at construction."""
        rng = np.random.default_rng(3)
        x = rng.random((8, 784))
        y = np.zeros((8, 10))
        y[np.arange(8), rng.integers(0, 10, 8)] = 1.0

        with Network(784, 10, 100, 4, seed=0) as net:
            net.train(x, y, 0.1)

            tracemalloc.start()
            try:
                net.train(x, y, 0.1)
                _, peak = tracemalloc.get_traced_memory()
            finally:
                tracemalloc.stop()

            # The smallest weight matrix is 100 x 100 doubles
            assert peak < net.layers[2].weight.nbytes

    def test_mismatched_targets(self, small_network):
        with pytest.raises(ValueError):
            small_network.train([[0.0, 0.0], [1.0, 1.0]], [[0.0, 0.0]], 0.1)

    def test_none_batch(self, small_network):
        with pytest.raises(ValueError):
            small_network.train(None, [[0.0, 0.0]], 0.1)


@pytest.mark.unit
def test_quadratic_loss():
    assert quadratic_loss([1.0, 2.0], [0.0, 0.0]) == pytest.approx(2.5)
    assert quadratic_loss([1.0], [1.0]) == 0.0
