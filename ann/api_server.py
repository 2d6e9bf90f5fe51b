"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for the network engine.

This module provides endpoints for:
- Opening and closing networks held in memory
- Running inference on a single input vector
- Running one mini-batch training step
- Training on MNIST in the background with real-time progress updates

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks

Networks are never written to disk; they live until closed or until the
server stops.
"""

import os
import sys
import uuid
import logging
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Local imports
from ann import mnist_loader
from ann import training
from ann.network import (
    Network,
    MAX_BATCH,
    open_network,
    close_network,
    quadratic_loss
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('ann').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO pushes MNIST training progress to connected clients
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

DEFAULT_DATA_DIR = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'data'
)

# Networks currently open: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# MNIST training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# MNIST dataset, loaded on the first training job
training_data: Any = None
test_data: Any = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_mnist_data() -> None:
    """
    Load the MNIST IDX files from ANN_DATA_DIR into global variables.

    Does nothing if the data is already loaded.
    """
    global training_data, test_data

    if training_data is not None and test_data is not None:
        return

    data_dir = os.getenv('ANN_DATA_DIR', DEFAULT_DATA_DIR)
    logger.info(f"Loading MNIST data from {data_dir}...")
    try:
        training_data, test_data = mnist_loader.load_data(data_dir)
    except Exception as e:
        logger.exception(f"Error loading MNIST data: {e}")
        raise


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def network_summary(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    """Describe an open network for JSON responses."""
    net: Network = info['network']
    return {
        'network_id': network_id,
        'architecture': net.sizes,
        'input_size': net.input_size,
        'output_size': net.output_size,
        'hidden_size': net.hidden_size,
        'layer_count': net.layer_count,
        'batches_trained': info['batches_trained'],
        'accuracy': info['accuracy']
    }


def request_object() -> Optional[Dict[str, Any]]:
    """
    Return the JSON request body as a dict.

    A missing or unparsable body counts as ``{}``; a body that parses to
    anything other than an object returns None.
    """
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        return None
    return data


def _get_int(data: Dict[str, Any], key: str, default: int) -> Optional[int]:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Counts only training jobs that are pending or training.
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Open a new network.

    Request body (all optional):
        {
            'input': 784,
            'output': 10,
            'hidden': 100,
            'layers': 4,
            'seed': 42
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request_object()
    if data is None:
        return jsonify({'error': 'Request body must be a JSON object'}), 400

    sizes = {}
    for key, default in (('input', 784), ('output', 10),
                         ('hidden', 100), ('layers', 4)):
        value = _get_int(data, key, default)
        if value is None:
            return jsonify({'error': f'{key} must be an integer'}), 400
        sizes[key] = value

    seed = data.get('seed')
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        return jsonify({'error': 'seed must be an integer'}), 400

    try:
        net = open_network(
            sizes['input'], sizes['output'], sizes['hidden'], sizes['layers'],
            seed=seed
        )
        if net is None:
            return jsonify({'error': 'Out of memory creating network'}), 507

        network_id = str(uuid.uuid4())
        active_networks[network_id] = {
            'network': net,
            'batches_trained': 0,
            'accuracy': None
        }

        logger.info(f"Created network {network_id} with architecture {net.sizes}")

        return jsonify({
            'network_id': network_id,
            'architecture': net.sizes,
            'status': 'created'
        }), 201

    except ValueError as e:
        logger.warning(f"Invalid architecture requested: {sizes}: {e}")
        return jsonify({'error': f'Invalid architecture: {e}'}), 400
    except Exception as e:
        logger.exception(f"Error creating network: {e}")
        return jsonify({'error': f'Failed to create network: {str(e)}'}), 500


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all open networks."""
    networks = [
        network_summary(nid, info) for nid, info in active_networks.items()
    ]
    logger.debug(f"Listing {len(networks)} networks")
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    """Describe one open network."""
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404
    return jsonify(network_summary(network_id, active_networks[network_id])), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Close a network and forget it."""
    info = active_networks.pop(network_id, None)
    if info is None:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    close_network(info['network'])
    logger.info(f"Closed network {network_id}")

    return jsonify({'network_id': network_id, 'status': 'closed'}), 200


@app.route('/api/networks/<network_id>/infer', methods=['POST'])
def infer(network_id: str):
    """
    Run the forward pass on one input vector.

    Request body:
        {'input': [0.0, 0.5, ...]}

    Returns:
        JSON with the output vector and its argmax
    """
    if network_id not in active_networks:
        logger.warning(f"Inference requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request_object()
    if data is None:
        return jsonify({'error': 'Request body must be a JSON object'}), 400
    if 'input' not in data:
        return jsonify({'error': 'input is required'}), 400

    net: Network = active_networks[network_id]['network']
    try:
        x = np.asarray(data['input'], dtype=np.float64)
        if x.size != net.input_size:
            raise ValueError(f"expected {net.input_size} values, got {x.size}")
    except (TypeError, ValueError) as e:
        return jsonify({'error': f'Invalid input: {e}'}), 400

    try:
        output = net.activate(x)

        return jsonify({
            'network_id': network_id,
            'output': array_to_float_list(output),
            'predicted': training.argmax(output)
        }), 200

    except Exception as e:
        logger.exception(f"Inference failed for network {network_id}: {e}")
        return jsonify({'error': f'Inference failed: {str(e)}'}), 500


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_batch(network_id: str):
    """
    Run one mini-batch gradient-descent step.

    Request body:
        {
            'inputs': [[...], ...],    # k input vectors
            'targets': [[...], ...],   # k target vectors
            'learning_rate': 0.1       # optional, 0 < eta <= 1
        }

    Returns:
        JSON with the mean quadratic loss on the batch before and after
        the step
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request_object()
    if data is None:
        return jsonify({'error': 'Request body must be a JSON object'}), 400
    learning_rate = data.get('learning_rate', training.DEFAULT_ETA)
    if (isinstance(learning_rate, bool)
            or not isinstance(learning_rate, (int, float))
            or not 0 < learning_rate <= 1):
        return jsonify({'error': 'learning_rate must be in (0, 1]'}), 400
    if 'inputs' not in data or 'targets' not in data:
        return jsonify({'error': 'inputs and targets are required'}), 400

    info = active_networks[network_id]
    net: Network = info['network']

    try:
        x = np.asarray(data['inputs'], dtype=np.float64).reshape(-1, net.input_size)
        y = np.asarray(data['targets'], dtype=np.float64).reshape(-1, net.output_size)
    except (TypeError, ValueError) as e:
        return jsonify({'error': f'Invalid batch: {e}'}), 400

    k = len(x)
    if len(y) != k or not 1 <= k <= MAX_BATCH:
        return jsonify({
            'error': f'inputs and targets must hold the same number of '
                     f'vectors, between 1 and {MAX_BATCH}'
        }), 400

    def mean_loss() -> float:
        return sum(
            quadratic_loss(net.activate(x[i]), y[i]) for i in range(k)
        ) / k

    try:
        loss_before = mean_loss()
        net.train(x, y, float(learning_rate), k)
        loss_after = mean_loss()
        info['batches_trained'] += 1

        logger.debug(
            f"Trained network {network_id} on {k} samples: "
            f"loss {loss_before:.6f} -> {loss_after:.6f}"
        )

        return jsonify({
            'network_id': network_id,
            'batch_size': k,
            'loss_before': loss_before,
            'loss_after': loss_after
        }), 200

    except Exception as e:
        logger.exception(f"Training step failed for network {network_id}: {e}")
        return jsonify({'error': f'Training step failed: {str(e)}'}), 500


@app.route('/api/networks/<network_id>/train_mnist', methods=['POST'])
def train_mnist(network_id: str):
    """
    Start training a network on MNIST in the background.

    The network must have 784 inputs and 10 outputs.

    Request body (all optional):
        {
            'epochs': 4,
            'batch_size': 8,
            'learning_rate': 0.1
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"MNIST training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    net: Network = active_networks[network_id]['network']
    if net.input_size != mnist_loader.IMAGE_SIZE or net.output_size != training.NUM_CLASSES:
        return jsonify({
            'error': f'MNIST needs {mnist_loader.IMAGE_SIZE} inputs and '
                     f'{training.NUM_CLASSES} outputs'
        }), 400

    data = request_object()
    if data is None:
        return jsonify({'error': 'Request body must be a JSON object'}), 400
    epochs = data.get('epochs', training.DEFAULT_EPOCHS)
    batch_size = data.get('batch_size', training.DEFAULT_BATCH_SIZE)
    learning_rate = data.get('learning_rate', training.DEFAULT_ETA)

    if isinstance(epochs, bool) or not isinstance(epochs, int) or epochs < 1:
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if (isinstance(batch_size, bool) or not isinstance(batch_size, int)
            or not 1 <= batch_size <= MAX_BATCH):
        return jsonify({'error': f'batch_size must be between 1 and {MAX_BATCH}'}), 400
    if (isinstance(learning_rate, bool)
            or not isinstance(learning_rate, (int, float))
            or not 0 < learning_rate <= 1):
        return jsonify({'error': 'learning_rate must be in (0, 1]'}), 400

    job_id = str(uuid.uuid4())

    try:
        training_jobs[job_id] = {
            'network_id': network_id,
            'status': 'pending',
            'progress': 0,
            'epochs': epochs
        }

        logger.info(
            f"Created training job {job_id} for network {network_id}: "
            f"epochs={epochs}, batch_size={batch_size}, lr={learning_rate}"
        )

        socketio.start_background_task(
            train_mnist_task,
            network_id, job_id, epochs, batch_size, float(learning_rate)
        )

        return jsonify({
            'job_id': job_id,
            'network_id': network_id,
            'status': 'training_started'
        }), 202

    except Exception as e:
        logger.exception(f"Error starting training job {job_id}: {e}")
        training_jobs.pop(job_id, None)
        return jsonify({'error': f'Failed to start training: {str(e)}'}), 500


def train_mnist_task(
    network_id: str,
    job_id: str,
    epochs: int,
    batch_size: int,
    learning_rate: float
) -> None:
    """
    Background task that trains a network on MNIST.

    Sends progress updates via WebSocket after every epoch.
    """
    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress
        training_jobs[job_id]['accuracy'] = data['accuracy']

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'accuracy': data['accuracy'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress,
            'correct': data.get('correct'),
            'total': data.get('total')
        })

        # Let gevent send the message immediately
        gevent.sleep(0)

    def on_batch_complete(data: Dict[str, Any]) -> None:
        info['batches_trained'] += 1

    # Lets HTTP requests run between batches
    def yield_to_other_tasks():
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")
        training_jobs[job_id]['status'] = 'training'

        info = active_networks.get(network_id)
        if info is None:
            raise LookupError(f"Network {network_id} no longer exists")
        net: Network = info['network']

        load_mnist_data()

        accuracy = training.train_and_test(
            net,
            training_data,
            test_data,
            epochs=epochs,
            batch_size=batch_size,
            eta=learning_rate,
            callback=on_epoch_complete,
            yield_func=yield_to_other_tasks,
            batch_callback=on_batch_complete
        )

        info['accuracy'] = accuracy

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = accuracy
        training_jobs[job_id]['progress'] = 100

        logger.info(f"Training completed for job {job_id}: accuracy {accuracy:.2%}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of an MNIST training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> None:
    """Run the server with WebSocket support."""
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise


if __name__ == '__main__':
    main()
