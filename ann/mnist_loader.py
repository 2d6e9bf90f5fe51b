"""
mnist_loader.py
~~~~~~~~~~~~~~~

Loader for the MNIST handwritten-digit files in their original IDX format.

An IDX file starts with big-endian int32 header fields (a magic number,
then one field per dimension) followed by the raw unsigned-byte payload:

- labels: ``[0x00000801, count]`` then ``count`` bytes
- images: ``[0x00000803, count, 28, 28]`` then ``count * 784`` bytes

The expected file names inside the data directory are ``train-images``,
``train-labels``, ``test-images`` and ``test-labels``.
"""

import os
import logging
from typing import Tuple

import numpy as np

# Configure module logger
logger = logging.getLogger(__name__)

LABELS_MAGIC = 0x00000801
IMAGES_MAGIC = 0x00000803
IMAGE_ROWS = 28
IMAGE_COLS = 28
IMAGE_SIZE = IMAGE_ROWS * IMAGE_COLS

# Header fields are 4-byte big-endian signed integers
_HEADER_DTYPE = np.dtype('>i4')

Dataset = Tuple[np.ndarray, np.ndarray]


def _read_idx(path: str, magic: int, dims: int) -> Tuple[np.ndarray, bytes]:
    """
    Read an IDX file and check its magic number.

    Args:
        path: Path to the IDX file
        magic: Expected magic number
        dims: Number of dimension fields after the magic number

    Returns:
        tuple: (header fields after the magic number, payload bytes)

    Raises:
        OSError: If the file cannot be opened
        ValueError: If the header is short or the magic number is wrong
    """
    header_len = (dims + 1) * _HEADER_DTYPE.itemsize

    with open(path, 'rb') as f:
        raw = f.read()

    if len(raw) < header_len:
        logger.error(f"Unable to read header of {path}")
        raise ValueError(f"{path}: file too short for IDX header")

    header = np.frombuffer(raw, dtype=_HEADER_DTYPE, count=dims + 1)
    if int(header[0]) != magic:
        logger.error(f"Invalid IDX file {path}: magic {int(header[0]):#010x}")
        raise ValueError(
            f"{path}: expected magic {magic:#010x}, got {int(header[0]):#010x}"
        )

    return header[1:].astype(np.int64), raw[header_len:]


def load_labels(path: str) -> np.ndarray:
    """
    Load a label file.

    Args:
        path: Path to an IDX label file

    Returns:
        np.ndarray: uint8 array of shape (count,)

    Raises:
        ValueError: If the file is not a valid label file
    """
    (count,), payload = _read_idx(path, LABELS_MAGIC, 1)

    if count <= 0:
        logger.error(f"Invalid label count {count} in {path}")
        raise ValueError(f"{path}: label count must be positive, got {count}")
    if len(payload) < count:
        logger.error(f"Unable to read {count} labels from {path}")
        raise ValueError(
            f"{path}: expected {count} label bytes, got {len(payload)}"
        )

    labels = np.frombuffer(payload, dtype=np.uint8, count=count).copy()
    logger.debug(f"Loaded {count} labels from {path}")
    return labels


def load_images(path: str) -> np.ndarray:
    """
    Load an image file of 28x28 greyscale digits.

    Args:
        path: Path to an IDX image file

    Returns:
        np.ndarray: uint8 array of shape (count, 784), one flattened
        image per row

    Raises:
        ValueError: If the file is not a valid 28x28 image file
    """
    (count, rows, cols), payload = _read_idx(path, IMAGES_MAGIC, 3)

    if count <= 0 or rows != IMAGE_ROWS or cols != IMAGE_COLS:
        logger.error(f"Invalid image header in {path}: {count}x{rows}x{cols}")
        raise ValueError(
            f"{path}: expected positive count of {IMAGE_ROWS}x{IMAGE_COLS} "
            f"images, got {count}x{rows}x{cols}"
        )

    expected = count * IMAGE_SIZE
    if len(payload) < expected:
        logger.error(f"Unable to read {count} images from {path}")
        raise ValueError(
            f"{path}: expected {expected} pixel bytes, got {len(payload)}"
        )

    images = np.frombuffer(payload, dtype=np.uint8, count=expected)
    logger.debug(f"Loaded {count} images from {path}")
    return images.reshape(count, IMAGE_SIZE).copy()


def load_pair(data_dir: str, prefix: str) -> Dataset:
    """
    Load ``<prefix>-images`` and ``<prefix>-labels`` from ``data_dir``.

    Raises:
        ValueError: If the two files disagree on the number of samples
    """
    images = load_images(os.path.join(data_dir, f'{prefix}-images'))
    labels = load_labels(os.path.join(data_dir, f'{prefix}-labels'))

    if len(images) != len(labels):
        logger.error(
            f"{prefix} set has {len(images)} images but {len(labels)} labels"
        )
        raise ValueError(
            f"{prefix}: image count {len(images)} does not match "
            f"label count {len(labels)}"
        )

    return images, labels


def load_data(data_dir: str = 'data') -> Tuple[Dataset, Dataset]:
    """
    Load the MNIST training and test sets.

    Args:
        data_dir: Directory holding the four IDX files

    Returns:
        tuple: ((train_images, train_labels), (test_images, test_labels))

    Example:
        >>> (train_x, train_y), (test_x, test_y) = load_data('data')
        >>> train_x.shape
        (60000, 784)
    """
    training_data = load_pair(data_dir, 'train')
    test_data = load_pair(data_dir, 'test')

    logger.info(
        f"Data loaded from {data_dir}: {len(training_data[1])} training, "
        f"{len(test_data[1])} test"
    )
    return training_data, test_data
