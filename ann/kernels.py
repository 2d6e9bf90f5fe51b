"""
kernels.py
~~~~~~~~~~

Dense linear-algebra primitives used by the network engine.

Every kernel writes into a caller-supplied numpy buffer and returns nothing.
Kernels that need an intermediate product take a scratch buffer as well, so
none of them allocates an array.
Matrices are row-major ``n x m`` arrays; row ``i`` holds the ``m`` incoming
weights of output neuron ``i``. Shapes are read from the arrays, and a
mismatch is the caller's bug.
"""

import numpy as np


def matvec(z: np.ndarray, a: np.ndarray, x: np.ndarray) -> None:
    """
    Matrix times vector: ``z[i] = sum_j a[i, j] * x[j]``.

    Args:
        z: Output buffer of length n (overwritten)
        a: Row-major n x m matrix
        x: Input vector of length m
    """
    np.dot(a, x, out=z)


def matvec_t(z: np.ndarray, a: np.ndarray, x: np.ndarray) -> None:
    """
    Transposed matrix times vector: ``z[i] = sum_j a[j, i] * x[j]``.

    The transpose is a strided view of ``a``; nothing is copied.

    Args:
        z: Output buffer of length m (overwritten)
        a: Row-major n x m matrix
        x: Input vector of length n
    """
    np.dot(a.T, x, out=z)


def outer_accum(z: np.ndarray, b: np.ndarray, c: np.ndarray,
                scratch: np.ndarray) -> None:
    """
    Accumulate the outer product ``z[i, j] += b[i] * c[j]``.

    ``scratch`` must have the shape of ``z``; it receives the product and
    is left holding it.
    """
    np.multiply.outer(b, c, out=scratch)
    np.add(z, scratch, out=z)


def axpy_accum(z: np.ndarray, b: np.ndarray, s: float,
               scratch: np.ndarray) -> None:
    """Scaled accumulate ``z[i] += b[i] * s`` through ``scratch`` (shape of ``z``)."""
    np.multiply(b, s, out=scratch)
    np.add(z, scratch, out=z)


def add(z: np.ndarray, b: np.ndarray) -> None:
    """Elementwise ``z[i] += b[i]``."""
    np.add(z, b, out=z)


def sub(z: np.ndarray, a: np.ndarray, b: np.ndarray) -> None:
    """Elementwise ``z[i] = a[i] - b[i]``."""
    np.subtract(a, b, out=z)


def relu(z: np.ndarray) -> None:
    """Rectify in place: ``z[i] = max(0, z[i])``."""
    np.maximum(z, 0.0, out=z)


def relu_grad_mask(z: np.ndarray, pre: np.ndarray) -> None:
    """
    Multiply the ReLU derivative into an error vector.

    Zeroes ``z[i]`` wherever ``pre[i] <= 0``. The derivative is taken as 0
    at exactly zero.

    Args:
        z: Error vector, modified in place
        pre: Activations that decide the mask (pre- or post-ReLU, the sign
            test gives the same answer for both)
    """
    z[pre <= 0.0] = 0.0
