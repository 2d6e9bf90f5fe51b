#!/usr/bin/env python3
"""
Train a 784-100-100-10 network on MNIST and report test accuracy.

Usage:
    python scripts/train_mnist.py

The script will:
1. Open a network with 784 inputs, 10 outputs and two hidden layers of 100
2. Load the IDX files from data/ (or $ANN_DATA_DIR)
3. Train for 4 epochs with mini-batches of 8 at learning rate 0.1
4. Print test accuracy after every epoch
"""

import os
import sys
import logging
from typing import Any, Dict

from ann import mnist_loader
from ann import training
from ann.network import open_network, close_network

HIDDEN = 100
LAYERS = 4


def configure_logging() -> None:
    """Log to stderr at $LOG_LEVEL (default WARNING) so progress stays readable."""
    log_level_str = os.getenv('LOG_LEVEL', 'WARNING').upper()
    logging.basicConfig(
        level=getattr(logging, log_level_str, logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def print_progress(data: Dict[str, Any]) -> None:
    """Overwrite the current console line with batch progress."""
    print(f"\r{data['batch']:06d}/{data['total_batches']:06d}", end='', flush=True)


def print_accuracy(data: Dict[str, Any]) -> None:
    """Print test accuracy at the end of an epoch."""
    print(f"\rAccuracy  : {data['accuracy']:.4f}")


def main():
    """Main training function."""
    configure_logging()

    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    data_dir = os.getenv('ANN_DATA_DIR', os.path.join(project_root, 'data'))

    net = open_network(mnist_loader.IMAGE_SIZE, training.NUM_CLASSES, HIDDEN, LAYERS)
    if net is None:
        print("❌ Error: out of memory")
        sys.exit(1)

    try:
        training_data, test_data = mnist_loader.load_data(data_dir)
    except (OSError, ValueError) as e:
        print(f"❌ Error: failed to load valid train/test data: {e}")
        close_network(net)
        sys.exit(1)

    try:
        for epoch in range(training.DEFAULT_EPOCHS):
            print(f"--- EPOCH {epoch} ---")
            training.train_and_test(
                net,
                training_data,
                test_data,
                epochs=1,
                batch_size=training.DEFAULT_BATCH_SIZE,
                eta=training.DEFAULT_ETA,
                callback=print_accuracy,
                batch_callback=print_progress
            )
    finally:
        close_network(net)


if __name__ == '__main__':
    main()
