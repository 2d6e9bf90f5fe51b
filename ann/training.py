"""
training.py
~~~~~~~~~~~

Training and evaluation loop that feeds MNIST samples to a Network.

Pixels are scaled to [0, 1], labels are one-hot encoded, and the network
is trained on consecutive fixed-size mini-batches. Accuracy is the share
of test images whose output argmax equals the label.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

from ann.network import Network

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 8
DEFAULT_EPOCHS = 4
DEFAULT_ETA = 0.1
NUM_CLASSES = 10

Callback = Callable[[Dict[str, Any]], None]


def normalize(images: np.ndarray) -> np.ndarray:
    """Scale raw 0-255 pixel bytes to float64 values in [0, 1]."""
    return np.asarray(images, dtype=np.float64) / 255.0


def one_hot(labels: np.ndarray, classes: int = NUM_CLASSES) -> np.ndarray:
    """
    Encode integer labels as one-hot rows.

    Args:
        labels: Integer labels in ``0..classes-1``
        classes: Width of each encoded row

    Returns:
        np.ndarray: float64 array of shape (len(labels), classes)
    """
    labels = np.asarray(labels, dtype=np.int64).ravel()
    encoded = np.zeros((labels.size, classes), dtype=np.float64)
    encoded[np.arange(labels.size), labels] = 1.0
    return encoded


def argmax(vector: np.ndarray) -> int:
    """Index of the largest value; the first one wins ties."""
    return int(np.argmax(vector))


def train_epoch(
    net: Network,
    images: np.ndarray,
    labels: np.ndarray,
    batch_size: int = DEFAULT_BATCH_SIZE,
    eta: float = DEFAULT_ETA,
    callback: Optional[Callback] = None,
    yield_func: Optional[Callable[[], None]] = None
) -> int:
    """
    Train on every full mini-batch of the data, in order.

    A trailing partial batch is skipped.

    Args:
        net: Network to train
        images: Raw pixel rows, shape (count, input_size)
        labels: Integer labels, shape (count,)
        batch_size: Samples per gradient step
        eta: Learning rate
        callback: Called after each batch with ``batch`` and
            ``total_batches``
        yield_func: Called after each batch so cooperative servers can
            handle other work

    Returns:
        int: Number of batches trained
    """
    total_batches = len(labels) // batch_size

    for i in range(total_batches):
        start = i * batch_size
        end = start + batch_size
        x = normalize(images[start:end])
        y = one_hot(labels[start:end], net.output_size)
        net.train(x, y, eta, batch_size)

        if callback is not None:
            callback({'batch': i + 1, 'total_batches': total_batches})
        if yield_func is not None:
            yield_func()

    return total_batches


def evaluate(
    net: Network,
    images: np.ndarray,
    labels: np.ndarray,
    yield_func: Optional[Callable[[], None]] = None
) -> int:
    """
    Count test samples the network classifies correctly.

    Returns:
        int: Number of samples whose output argmax equals the label
    """
    correct = 0
    for i in range(len(labels)):
        output = net.activate(normalize(images[i]))
        if argmax(output) == int(labels[i]):
            correct += 1
        if yield_func is not None and i % 1000 == 999:
            yield_func()
    return correct


def train_and_test(
    net: Network,
    training_data: Tuple[np.ndarray, np.ndarray],
    test_data: Tuple[np.ndarray, np.ndarray],
    epochs: int = DEFAULT_EPOCHS,
    batch_size: int = DEFAULT_BATCH_SIZE,
    eta: float = DEFAULT_ETA,
    callback: Optional[Callback] = None,
    yield_func: Optional[Callable[[], None]] = None,
    batch_callback: Optional[Callback] = None
) -> float:
    """
    Train for ``epochs`` passes, measuring test accuracy after each one.

    Args:
        net: Network to train
        training_data: (images, labels) used for gradient steps
        test_data: (images, labels) used for accuracy
        epochs: Number of passes over the training data
        batch_size: Samples per gradient step
        eta: Learning rate
        callback: Called after each epoch with ``epoch``, ``total_epochs``,
            ``accuracy``, ``correct``, ``total`` and ``elapsed_time``
        yield_func: Called regularly to let other tasks run
        batch_callback: Forwarded to train_epoch()

    Returns:
        float: Test accuracy after the last epoch (0.0 to 1.0)
    """
    if epochs < 1:
        raise ValueError(f"epochs must be a positive integer, got {epochs}")

    train_images, train_labels = training_data
    test_images, test_labels = test_data
    total = len(test_labels)
    accuracy = 0.0
    start_time = time.time()

    for epoch in range(epochs):
        logger.info(f"--- EPOCH {epoch} ---")
        train_epoch(net, train_images, train_labels, batch_size, eta,
                    callback=batch_callback, yield_func=yield_func)

        correct = evaluate(net, test_images, test_labels, yield_func=yield_func)
        accuracy = correct / total if total else 0.0
        elapsed = time.time() - start_time
        logger.info(
            f"Epoch {epoch + 1}/{epochs}: {correct}/{total} correct, "
            f"accuracy {accuracy:.4f} ({elapsed:.1f}s)"
        )

        if callback is not None:
            callback({
                'epoch': epoch + 1,
                'total_epochs': epochs,
                'accuracy': accuracy,
                'correct': correct,
                'total': total,
                'elapsed_time': elapsed
            })

    return accuracy
