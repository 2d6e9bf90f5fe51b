"""
network.py
~~~~~~~~~~

A fixed-topology feedforward network trained with mini-batch gradient
descent via backpropagation.

Every hidden layer shares one width. Hidden layers use ReLU, the output
layer is linear, and training minimises the quadratic cost
``0.5 * ||a_L - y||^2``. All buffers (activations, error signals, weights,
gradient accumulators) are allocated once at construction and reused, so
``activate``, ``backprop`` and ``train`` never allocate per layer. Products
that would otherwise need a temporary go through per-layer scratch buffers.

Example:
    >>> net = Network(784, 10, 100, 4, seed=0)
    >>> out = net.activate(image)          # read-only view, see activate()
    >>> net.train(images, one_hot_labels, eta=0.1)
    >>> net.close()
"""

import logging
from typing import List, Optional

import numpy as np

from ann import kernels

# Configure module logger
logger = logging.getLogger(__name__)

MAX_UNITS = 1000000
MIN_LAYERS = 3
MAX_LAYERS = 20
MAX_BATCH = 128


class Layer:
    """
    Buffers owned by one stage of the network.

    ``activation`` and ``error_signal`` exist for every layer. ``weight``
    (``size x fan_in``, row-major), ``bias`` and their gradient
    accumulators exist only for layers after the input, and are ``None``
    on the input layer. ``weight_scratch`` and ``bias_scratch`` hold
    intermediate products so the update kernels never allocate.
    """

    def __init__(self, size: int, fan_in: Optional[int] = None):
        self.size = size
        self.activation = np.zeros(size, dtype=np.float64)
        self.error_signal = np.zeros(size, dtype=np.float64)

        self.weight: Optional[np.ndarray] = None
        self.bias: Optional[np.ndarray] = None
        self.weight_grad: Optional[np.ndarray] = None
        self.bias_grad: Optional[np.ndarray] = None
        self.weight_scratch: Optional[np.ndarray] = None
        self.bias_scratch: Optional[np.ndarray] = None

        if fan_in is not None:
            self.weight = np.zeros((size, fan_in), dtype=np.float64)
            self.bias = np.zeros(size, dtype=np.float64)
            self.weight_grad = np.zeros((size, fan_in), dtype=np.float64)
            self.bias_grad = np.zeros(size, dtype=np.float64)
            self.weight_scratch = np.zeros((size, fan_in), dtype=np.float64)
            self.bias_scratch = np.zeros(size, dtype=np.float64)

    def release(self) -> None:
        """Drop every buffer held by this layer."""
        self.activation = None
        self.error_signal = None
        self.weight = None
        self.bias = None
        self.weight_grad = None
        self.bias_grad = None
        self.weight_scratch = None
        self.bias_scratch = None


def _check_units(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if not 1 <= value <= MAX_UNITS:
        raise ValueError(
            f"{name} must be between 1 and {MAX_UNITS}, got {value}"
        )


def quadratic_loss(output: np.ndarray, target: np.ndarray) -> float:
    """
    Quadratic cost of a single prediction.

    Args:
        output: Network output vector
        target: Expected output vector

    Returns:
        float: ``0.5 * ||output - target||^2``
    """
    diff = np.asarray(output, dtype=np.float64) - np.asarray(target, dtype=np.float64)
    return 0.5 * float(np.dot(diff.ravel(), diff.ravel()))


class Network:
    """
    Multilayer perceptron with ``layer_count`` layers.

    Layer 0 is the input (``input_size`` wide), the last layer is the
    output (``output_size`` wide) and every layer in between is
    ``hidden_size`` wide.

    The network owns its random generator. Pass ``seed`` for reproducible
    weights, or ``rng`` to share a caller-managed ``numpy.random.Generator``.

    Not thread-safe: ``activate``, ``backprop`` and ``train`` mutate shared
    per-layer caches in place.
    """

    def __init__(
        self,
        input_size: int,
        output_size: int,
        hidden_size: int,
        layer_count: int,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Build the network and randomise its weights.

        Args:
            input_size: Number of input neurons (1 to 1,000,000)
            output_size: Number of output neurons (1 to 1,000,000)
            hidden_size: Neurons per hidden layer (1 to 1,000,000)
            layer_count: Layers including input and output (3 to 20)
            seed: Seed for a fresh generator, ignored when ``rng`` is given
            rng: Generator used for weight initialisation

        Raises:
            ValueError: If any size is out of range
            MemoryError: If the buffers cannot be allocated; nothing is
                left half-built
        """
        _check_units('input_size', input_size)
        _check_units('output_size', output_size)
        _check_units('hidden_size', hidden_size)
        if isinstance(layer_count, bool) or not isinstance(layer_count, (int, np.integer)):
            raise ValueError(f"layer_count must be an integer, got {layer_count!r}")
        if not MIN_LAYERS <= layer_count <= MAX_LAYERS:
            raise ValueError(
                f"layer_count must be between {MIN_LAYERS} and {MAX_LAYERS}, "
                f"got {layer_count}"
            )

        self.input_size = int(input_size)
        self.output_size = int(output_size)
        self.hidden_size = int(hidden_size)
        self.layer_count = int(layer_count)
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.layers = []

        try:
            for l in range(self.layer_count):
                fan_in = self.size(l - 1) if l > 0 else None
                self.layers.append(Layer(self.size(l), fan_in))
            self._randomize()
        except MemoryError:
            self.close()
            logger.error(
                f"Out of memory allocating network "
                f"{input_size}-{hidden_size}x{layer_count - 2}-{output_size}"
            )
            raise

        logger.debug(f"Opened network with layer sizes {self.sizes}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> 'Network':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __repr__(self) -> str:
        state = 'closed' if self.closed else 'open'
        return f"<Network {self.sizes} {state}>"

    @property
    def closed(self) -> bool:
        """True once close() has released the buffers."""
        return self.layers is None

    @property
    def sizes(self) -> List[int]:
        """Width of every layer, input first."""
        return [self.size(l) for l in range(self.layer_count)]

    def size(self, l: int) -> int:
        """Width of layer ``l``."""
        if l == 0:
            return self.input_size
        if l == self.layer_count - 1:
            return self.output_size
        return self.hidden_size

    def close(self) -> None:
        """
        Release every buffer. Safe to call more than once.

        Using the network afterwards raises ValueError.
        """
        if self.layers is None:
            return
        for layer in self.layers:
            layer.release()
        self.layers = None
        logger.debug("Closed network")

    def _check_open(self) -> None:
        if self.layers is None:
            raise ValueError("network is closed")

    def _randomize(self) -> None:
        """
        Draw every weight from ``a + u * b`` with ``u`` uniform on [0, 1),
        ``a = -sqrt(6 / (n*m))`` and ``b = 2 * sqrt(6 / (n*m))``.
        """
        for l in range(1, self.layer_count):
            weight = self.layers[l].weight
            n, m = weight.shape
            a = -np.sqrt(6.0 / (n * m)) * 1.0
            b = +np.sqrt(6.0 / (n * m)) * 2.0
            self.rng.random(out=weight)
            weight *= b
            weight += a

    # ------------------------------------------------------------------
    # Forward / backward
    # ------------------------------------------------------------------

    def _activate(self, x: np.ndarray) -> None:
        # a[0] := x
        # a[l] := relu(w[l] . a[l-1] + b[l]), linear on the output layer
        layers = self.layers
        layers[0].activation[...] = x
        for l in range(1, self.layer_count):
            layer = layers[l]
            kernels.matvec(layer.activation, layer.weight, layers[l - 1].activation)
            kernels.add(layer.activation, layer.bias)
            if l + 1 < self.layer_count:
                kernels.relu(layer.activation)

    def _backprop(self, y: np.ndarray) -> None:
        layers = self.layers
        l = self.layer_count - 1

        # d[L] := a[L] - y
        kernels.sub(layers[l].error_signal, layers[l].activation, y)

        # d[l-1] := (w[l]' . d[l]) * relu'(a[l-1])
        while l > 1:
            kernels.matvec_t(layers[l - 1].error_signal, layers[l].weight, layers[l].error_signal)
            kernels.relu_grad_mask(layers[l - 1].error_signal, layers[l - 1].activation)
            l -= 1

        # b_[l] += d[l]
        # w_[l] += d[l] (x) a[l-1]
        for l in range(1, self.layer_count):
            layer = layers[l]
            kernels.add(layer.bias_grad, layer.error_signal)
            kernels.outer_accum(
                layer.weight_grad, layer.error_signal, layers[l - 1].activation,
                layer.weight_scratch
            )

    def _as_vector(self, name: str, v, length: int) -> np.ndarray:
        if v is None:
            raise ValueError(f"{name} must not be None")
        v = np.asarray(v, dtype=np.float64).ravel()
        if v.size != length:
            raise ValueError(f"{name} must have {length} values, got {v.size}")
        return v

    def activate(self, x) -> np.ndarray:
        """
        Run the forward pass and return the output layer's activation.

        Args:
            x: Input vector with ``input_size`` values

        Returns:
            np.ndarray: Read-only view of the network's output buffer. Its
            contents stay valid until the next activate(), backprop() or
            train() call on this network; copy it to keep it.

        Raises:
            ValueError: If the network is closed or ``x`` has the wrong size
        """
        self._check_open()
        self._activate(self._as_vector('x', x, self.input_size))
        output = self.layers[-1].activation.view()
        output.flags.writeable = False
        return output

    # Alias for activate()
    infer = activate

    def zero_grad(self) -> None:
        """Reset every weight and bias gradient accumulator to zero."""
        self._check_open()
        for layer in self.layers[1:]:
            layer.weight_grad.fill(0.0)
            layer.bias_grad.fill(0.0)

    def backprop(self, y) -> None:
        """
        Compute every layer's error signal for target ``y`` and add this
        sample's gradient into ``weight_grad``/``bias_grad``.

        Reads the activations cached by the last activate() call, so it
        must run immediately after activate() on the matching input.
        Weights are not changed. train() performs the whole sequence and
        is the normal entry point.

        Raises:
            ValueError: If the network is closed or ``y`` has the wrong size
        """
        self._check_open()
        self._backprop(self._as_vector('y', y, self.output_size))

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, x, y, eta: float, k: Optional[int] = None) -> None:
        """
        Run one mini-batch gradient-descent step.

        Args:
            x: ``k`` input vectors, shape ``(k, input_size)`` or flattened
            y: ``k`` target vectors, shape ``(k, output_size)`` or flattened
            eta: Learning rate, 0 < eta <= 1
            k: Batch size (1 to 128); inferred from ``x`` when omitted

        Raises:
            ValueError: If the network is closed, ``k`` or ``eta`` is out of
                range, or the batch shapes do not match ``k``
        """
        self._check_open()
        if x is None or y is None:
            raise ValueError("x and y must not be None")
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)

        if k is None:
            k = x.size // self.input_size
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
            raise ValueError(f"k must be an integer, got {k!r}")
        if not 1 <= k <= MAX_BATCH:
            raise ValueError(f"k must be between 1 and {MAX_BATCH}, got {k}")
        if isinstance(eta, bool) or not isinstance(eta, (int, float, np.integer, np.floating)):
            raise ValueError(f"eta must be a number, got {eta!r}")
        if not 0.0 < eta <= 1.0:
            raise ValueError(f"eta must be in (0, 1], got {eta}")
        if x.size != k * self.input_size:
            raise ValueError(
                f"x must hold {k} x {self.input_size} values, got {x.size}"
            )
        if y.size != k * self.output_size:
            raise ValueError(
                f"y must hold {k} x {self.output_size} values, got {y.size}"
            )

        x = x.reshape(k, self.input_size)
        y = y.reshape(k, self.output_size)

        self.zero_grad()
        for i in range(k):
            self._activate(x[i])
            self._backprop(y[i])

        # w[l] := w[l] - (eta / k) * w_[l]
        # b[l] := b[l] - (eta / k) * b_[l]
        scale = -eta / k
        for layer in self.layers[1:]:
            kernels.axpy_accum(layer.weight, layer.weight_grad, scale, layer.weight_scratch)
            kernels.axpy_accum(layer.bias, layer.bias_grad, scale, layer.bias_scratch)


def open_network(
    input_size: int,
    output_size: int,
    hidden_size: int,
    layer_count: int,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None
) -> Optional[Network]:
    """
    Construct a network, returning None if memory runs out.

    Out-of-range sizes still raise ValueError; only allocation failure is
    treated as recoverable.

    Example:
        >>> net = open_network(784, 10, 100, 4)
        >>> if net is None:
        ...     sys.exit(1)
    """
    try:
        return Network(input_size, output_size, hidden_size, layer_count,
                       seed=seed, rng=rng)
    except MemoryError:
        return None


def close_network(network: Optional[Network]) -> None:
    """Close ``network``; does nothing for None or an already closed network."""
    if network is not None:
        network.close()
