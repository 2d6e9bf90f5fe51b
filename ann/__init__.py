"""
ann package
~~~~~~~~~~~

Minimal feedforward neural-network engine: fixed-topology multilayer
perceptron with ReLU hidden layers, a linear output layer, and mini-batch
gradient descent via backpropagation. Also contains the MNIST IDX loader,
the training driver, and the API server.
"""

from ann.network import (
    Layer,
    Network,
    close_network,
    open_network,
    quadratic_loss
)

__version__ = "1.0.0"

__all__ = [
    'Layer',
    'Network',
    'close_network',
    'open_network',
    'quadratic_loss',
]
