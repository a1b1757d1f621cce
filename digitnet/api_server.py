"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit classifiers.

This module provides endpoints for:
- Creating and managing single-layer and two-hidden-layer models
- Training a model for one epoch over the IDX training split, with
  real-time progress updates via WebSockets
- Loading the IDX test split in the background
- Running inference on one image and browsing classified test examples
- Cancelling any running job

Models live in memory only. A training job works on a private copy of the
published model and replaces the published model only when the whole epoch
completes, so inference never sees a model that is still being trained and a
cancelled or failed job leaves the published model unchanged.

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background jobs
"""

import base64
import logging
import math
import sys
import uuid
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional

import gevent
import numpy as np
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet.config import CLASS_COUNT, INPUT_SIZE, Settings
from digitnet.idx import IDXFormatError
from digitnet.models import MODEL_VARIANTS, MachineLearningModel, create_model
from digitnet.numeric import Vector
from digitnet.training import (
    CancellationToken,
    LabeledImage,
    TrainingCancelled,
    evaluate,
    load_test_set,
    to_input_vector,
    train_new_model,
)

settings = Settings.from_env()

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level = getattr(logging, settings.log_level, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if settings.is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
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

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not settings.is_production,
    engineio_logger=not settings.is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Published models: {model_id: model_info}. Only finished models appear here.
published_models: Dict[str, Dict[str, Any]] = {}

# Background jobs being tracked: {job_id: job_info}
jobs: Dict[str, Dict[str, Any]] = {}

# Cancellation tokens of running jobs: {job_id: token}
cancel_tokens: Dict[str, CancellationToken] = {}

# Test split, filled by the test-loading job
test_data: Optional[List[LabeledImage]] = None

ACTIVE_STATUSES = ('pending', 'running')


def yield_to_other_tasks() -> None:
    """Let gevent run other greenlets (HTTP requests, socket emits)."""
    gevent.sleep(0)


def make_progress_reporter(job_id: str, event: str,
                           extra: Dict[str, Any]) -> Callable[[int, int], None]:
    """
    Build a progress callback that updates the job and emits ``event``.

    Events are emitted only when the whole-percent progress changes so a
    60,000 record epoch produces about a hundred messages.
    """
    last_percent = -1

    def report(completed: int, total: int) -> None:
        nonlocal last_percent
        ratio = min(completed / total, 1.0) if total else 1.0
        job = jobs.get(job_id)
        if job is None:
            return
        job['status'] = 'running'
        job['completed'] = completed
        job['total'] = total
        job['progress'] = ratio * 100

        percent = int(ratio * 100)
        if percent == last_percent:
            return
        last_percent = percent
        socketio.emit(event, {
            'job_id': job_id,
            'completed': completed,
            'total': total,
            'progress': ratio * 100,
            **extra
        })

    return report


def new_job(kind: str, **details: Any) -> str:
    """Register a pending job and its cancellation token."""
    job_id = str(uuid.uuid4())
    jobs[job_id] = {
        'job_id': job_id,
        'kind': kind,
        'status': 'pending',
        'progress': 0,
        'completed': 0,
        'total': None,
        **details
    }
    cancel_tokens[job_id] = CancellationToken()
    return job_id


def finish_job(job_id: str, status: str, **details: Any) -> None:
    """Record the final status of a job and drop its cancellation token."""
    job = jobs.get(job_id)
    if job is not None:
        job['status'] = status
        job.update(details)
    cancel_tokens.pop(job_id, None)


def cleanup_finished_jobs() -> None:
    """
    Remove completed, cancelled or failed jobs from memory.

    This prevents the jobs dictionary from growing indefinitely.
    """
    jobs_to_remove = [
        job_id for job_id, job in jobs.items()
        if job.get('status') not in ACTIVE_STATUSES
    ]
    for job_id in jobs_to_remove:
        del jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished job(s)")


def model_summary(model_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'model_id': model_id,
        **info['model'].describe(),
        'trained': info['trained'],
        'accuracy': info['accuracy'],
        'epochs': info['epochs'],
    }


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

def load_test_data_task(job_id: str) -> None:
    """
    Background task that loads the test split.

    Sends progress updates via WebSocket as records are decoded. The loaded
    split replaces ``test_data`` only when the whole file has been read.
    """
    global test_data

    images_path, labels_path = settings.test_paths()
    token = cancel_tokens[job_id]
    progress = make_progress_reporter(job_id, 'test_loading_update', {})

    try:
        logger.info(f"Starting test data load for job {job_id}")
        images = load_test_set(
            images_path, labels_path,
            cancel_token=token,
            progress=progress,
            yield_func=yield_to_other_tasks,
            input_size=INPUT_SIZE
        )
        test_data = images

        finish_job(job_id, 'completed', progress=100, count=len(images))
        logger.info(f"Test data job {job_id} completed: {len(images)} image(s)")
        socketio.emit('test_loading_complete', {
            'job_id': job_id,
            'status': 'completed',
            'count': len(images)
        })

    except TrainingCancelled as e:
        finish_job(job_id, 'cancelled', completed=e.completed)
        logger.info(f"Test data job {job_id} cancelled after {e.completed} record(s)")
        socketio.emit('test_loading_cancelled', {'job_id': job_id, 'status': 'cancelled'})

    except (OSError, IDXFormatError, ValueError) as e:
        logger.error(f"Test data job {job_id} failed: {e}")
        finish_job(job_id, 'failed', error=str(e))
        socketio.emit('test_loading_error', {
            'job_id': job_id,
            'status': 'failed',
            'error': str(e)
        })

    except Exception as e:
        logger.exception(f"Unexpected error in test data job {job_id}: {e}")
        finish_job(job_id, 'failed', error=str(e))
        socketio.emit('test_loading_error', {
            'job_id': job_id,
            'status': 'failed',
            'error': str(e)
        })

    gevent.sleep(0)


def train_model_task(model_id: str, job_id: str) -> None:
    """
    Background task that trains a copy of a published model for one epoch.

    The trained copy is published only after the full epoch; a cancelled or
    failed run leaves the published model untouched.
    """
    images_path, labels_path = settings.train_paths()
    token = cancel_tokens[job_id]
    progress = make_progress_reporter(job_id, 'training_update', {'model_id': model_id})

    try:
        info = published_models.get(model_id)
        if info is None:
            raise ValueError(f"Model {model_id} no longer exists")

        logger.info(f"Starting training for job {job_id} (model {model_id})")

        trained, summary = train_new_model(
            info['model'], images_path, labels_path,
            cancel_token=token,
            progress=progress,
            yield_func=yield_to_other_tasks
        )

        accuracy = None
        if test_data:
            accuracy = evaluate(trained, test_data, yield_to_other_tasks).accuracy

        if model_id in published_models:
            published_models[model_id] = {
                'model': trained,
                'trained': True,
                'accuracy': accuracy,
                'epochs': info['epochs'] + 1,
            }
        else:
            logger.warning(f"Model {model_id} was deleted during training; discarding result")

        finish_job(
            job_id, 'completed',
            progress=100,
            accuracy=accuracy,
            records=summary.records,
            elapsed_time=summary.elapsed_time
        )
        accuracy_text = 'n/a' if accuracy is None else f"{accuracy:.2%}"
        logger.info(
            f"Training completed for job {job_id}: {summary.records} record(s), "
            f"accuracy {accuracy_text}"
        )

        socketio.emit('training_complete', {
            'job_id': job_id,
            'model_id': model_id,
            'status': 'completed',
            'accuracy': accuracy,
            'records': summary.records,
            'elapsed_time': summary.elapsed_time,
            'progress': 100
        })

    except TrainingCancelled as e:
        finish_job(job_id, 'cancelled', completed=e.completed)
        logger.info(f"Training job {job_id} cancelled after {e.completed} record(s)")
        socketio.emit('training_cancelled', {
            'job_id': job_id,
            'model_id': model_id,
            'status': 'cancelled'
        })

    except (OSError, IDXFormatError, ValueError) as e:
        logger.error(f"Training failed for job {job_id}: {e}")
        finish_job(job_id, 'failed', error=str(e))
        socketio.emit('training_error', {
            'job_id': job_id,
            'model_id': model_id,
            'status': 'failed',
            'error': str(e)
        })

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")
        finish_job(job_id, 'failed', error=str(e))
        socketio.emit('training_error', {
            'job_id': job_id,
            'model_id': model_id,
            'status': 'failed',
            'error': str(e)
        })

    gevent.sleep(0)


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and statistics."""
    active_jobs = sum(
        1 for job in jobs.values()
        if job.get('status') in ACTIVE_STATUSES
    )

    return jsonify({
        'status': 'online',
        'models': len(published_models),
        'active_jobs': active_jobs,
        'test_data_loaded': test_data is not None,
        'test_data_count': len(test_data) if test_data is not None else 0
    }), 200


@app.route('/api/models', methods=['POST'])
def create_model_endpoint():
    """
    Create and publish a new, untrained model.

    Request body (all optional):
        {
            'variant': 'two_hidden_layer',   # or 'single_layer'
            'hidden1': 512,
            'hidden2': 256,
            'learning_rate': 0.01,
            'seed': 42
        }

    Returns:
        JSON with model_id and architecture
    """
    data = request.get_json(silent=True) or {}
    variant = data.get('variant', 'two_hidden_layer')
    learning_rate = data.get('learning_rate', settings.learning_rate)
    seed = data.get('seed', settings.seed)

    if variant not in MODEL_VARIANTS:
        logger.warning(f"Invalid model variant requested: {variant}")
        return jsonify({
            'error': f'Invalid variant. Must be one of {sorted(MODEL_VARIANTS)}.'
        }), 400
    if isinstance(learning_rate, bool) or not isinstance(learning_rate, (int, float)) \
            or learning_rate <= 0:
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int) or seed < 0):
        return jsonify({'error': 'seed must be a non-negative integer'}), 400

    options: Dict[str, Any] = {'learning_rate': float(learning_rate), 'seed': seed}
    if variant == 'two_hidden_layer':
        for name, default in (('hidden1', settings.hidden1), ('hidden2', settings.hidden2)):
            size = data.get(name, default)
            if isinstance(size, bool) or not isinstance(size, int) or size < 1:
                return jsonify({'error': f'{name} must be a positive integer'}), 400
            options[name] = size

    model_id = str(uuid.uuid4())
    model = create_model(variant, input_size=INPUT_SIZE, output_size=CLASS_COUNT, **options)
    published_models[model_id] = {
        'model': model,
        'trained': False,
        'accuracy': None,
        'epochs': 0
    }

    logger.info(f"Created model {model_id}: {model.describe()}")

    return jsonify({
        **model_summary(model_id, published_models[model_id]),
        'status': 'created'
    }), 201


@app.route('/api/models', methods=['GET'])
def list_models():
    """List all published models."""
    models = [model_summary(mid, info) for mid, info in published_models.items()]
    logger.debug(f"Listing {len(models)} model(s)")
    return jsonify({'models': models}), 200


@app.route('/api/models/<model_id>', methods=['GET'])
def get_model(model_id: str):
    if model_id not in published_models:
        return jsonify({'error': 'Model not found'}), 404
    return jsonify(model_summary(model_id, published_models[model_id])), 200


@app.route('/api/models/<model_id>', methods=['DELETE'])
def delete_model(model_id: str):
    """Delete a published model. A running training job for it is discarded."""
    if model_id not in published_models:
        logger.warning(f"Delete attempted for non-existent model: {model_id}")
        return jsonify({'error': 'Model not found'}), 404

    del published_models[model_id]
    logger.info(f"Deleted model {model_id}")
    return jsonify({'model_id': model_id, 'deleted': True}), 200


@app.route('/api/models', methods=['DELETE'])
def delete_all_models():
    """Delete all published models."""
    deleted_count = len(published_models)
    published_models.clear()
    logger.info(f"Deleted all models: {deleted_count} total")
    return jsonify({
        'deleted_count': deleted_count,
        'message': f'Successfully deleted {deleted_count} model(s)'
    }), 200


@app.route('/api/models/<model_id>/train', methods=['POST'])
def train_model(model_id: str):
    """
    Start training a copy of a model in the background for one epoch.

    Returns:
        JSON with job_id, model_id, and status
    """
    if model_id not in published_models:
        logger.warning(f"Training requested for non-existent model: {model_id}")
        return jsonify({'error': 'Model not found'}), 404

    busy = any(
        job.get('model_id') == model_id and job.get('status') in ACTIVE_STATUSES
        for job in jobs.values()
    )
    if busy:
        return jsonify({'error': 'Model is already training'}), 409

    cleanup_finished_jobs()
    job_id = new_job('training', model_id=model_id)
    logger.info(f"Created training job {job_id} for model {model_id}")

    # Run training in background so we can return immediately
    socketio.start_background_task(train_model_task, model_id, job_id)

    return jsonify({
        'job_id': job_id,
        'model_id': model_id,
        'status': 'training_started'
    }), 202


@app.route('/api/test-data/load', methods=['POST'])
def load_test_data():
    """Start loading the test split in the background."""
    running = any(
        job.get('kind') == 'test_loading' and job.get('status') in ACTIVE_STATUSES
        for job in jobs.values()
    )
    if running:
        return jsonify({'error': 'Test data is already loading'}), 409

    cleanup_finished_jobs()
    job_id = new_job('test_loading')
    logger.info(f"Created test data job {job_id}")

    socketio.start_background_task(load_test_data_task, job_id)

    return jsonify({'job_id': job_id, 'status': 'loading_started'}), 202


@app.route('/api/jobs/<job_id>', methods=['GET'])
def get_job_status(job_id: str):
    """Get the current status of a background job."""
    if job_id not in jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(jobs[job_id]), 200


@app.route('/api/jobs/<job_id>/cancel', methods=['POST'])
def cancel_job(job_id: str):
    """
    Request cancellation of a running job.

    The job stops before its next record and publishes nothing.
    """
    if job_id not in jobs:
        return jsonify({'error': 'Job not found'}), 404

    token = cancel_tokens.get(job_id)
    if token is None:
        return jsonify({
            'error': f"Job is already {jobs[job_id]['status']}"
        }), 409

    token.cancel()
    jobs[job_id]['cancel_requested'] = True
    logger.info(f"Cancellation requested for job {job_id}")
    return jsonify({'job_id': job_id, 'status': 'cancelling'}), 202


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(vector: Vector) -> List[float]:
    """Convert a vector to a list of floats (for JSON serialization)."""
    return [float(val) for val in vector]


def parse_input_vector(data: Dict[str, Any], model: MachineLearningModel) -> Vector:
    """
    Build an input vector from a request body.

    Accepts either ``pixels`` (raw 0-255 values) or ``input`` (floats already
    scaled to [0, 1]).

    Raises:
        ValueError: If neither field is present or the values are invalid
    """
    if 'pixels' in data:
        pixels = data['pixels']
        if not isinstance(pixels, list) or len(pixels) != model.input_size:
            raise ValueError(f'pixels must be a list of {model.input_size} values')
        if not all(isinstance(p, int) and not isinstance(p, bool) and 0 <= p <= 255
                   for p in pixels):
            raise ValueError('pixels must be integers between 0 and 255')
        return to_input_vector(bytes(pixels), model.dtype)

    if 'input' in data:
        values = data['input']
        if not isinstance(values, list) or len(values) != model.input_size:
            raise ValueError(f'input must be a list of {model.input_size} numbers')
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
            raise ValueError('input must contain only numbers')
        if not all(math.isfinite(v) for v in values):
            raise ValueError('input must contain only finite numbers')
        return Vector(values, dtype=model.dtype)

    raise ValueError("Request body must contain 'pixels' or 'input'")


def create_digit_image(image_bytes: bytes, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        image_bytes: 784 raw pixels representing the 28x28 digit image
        predicted: The digit the model predicted (0-9)
        actual: The correct digit (0-9)

    Returns:
        Base64-encoded PNG image string
    """
    pixels = np.frombuffer(image_bytes, dtype=np.uint8).reshape(28, 28)

    plt.figure(figsize=(3, 3))
    plt.imshow(pixels, cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


# ============================================================================
# INFERENCE ENDPOINTS
# ============================================================================

@app.route('/api/models/<model_id>/inference', methods=['POST'])
def run_inference(model_id: str):
    """
    Classify one image with a published model.

    Request body:
        {'pixels': [0..255] * 784}  or  {'input': [0.0..1.0] * 784}

    Returns:
        JSON with the probability vector and the predicted digit
    """
    if model_id not in published_models:
        return jsonify({'error': 'Model not found'}), 404

    model = published_models[model_id]['model']
    data = request.get_json(silent=True) or {}

    try:
        x = parse_input_vector(data, model)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    y = model.inference(x)
    return jsonify({
        'model_id': model_id,
        'predicted_digit': model.category(y),
        'probabilities': array_to_float_list(y)
    }), 200


def find_example(model_id: str, want_correct: bool, max_attempts: int):
    """
    Find and return a random test example the model classifies correctly
    (``want_correct``) or incorrectly.
    """
    if model_id not in published_models:
        logger.warning(f"Example requested for non-existent model: {model_id}")
        return jsonify({'error': 'Model not found'}), 404

    if not test_data:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 503

    model = published_models[model_id]['model']
    data = test_data  # Local reference after None check

    for attempt in range(max_attempts):
        index = np.random.randint(0, len(data))
        example = data[index]

        output = model.inference(example.to_vector(model.dtype))
        predicted_digit = model.category(output)

        if (predicted_digit == example.digit) == want_correct:
            logger.debug(f"Found example on attempt {attempt + 1}")

            return jsonify({
                'model_id': model_id,
                'example_index': index,
                'predicted_digit': predicted_digit,
                'actual_digit': example.digit,
                'image_data': create_digit_image(
                    example.image_bytes, predicted_digit, example.digit
                ),
                'network_output': array_to_float_list(output)
            }), 200

    kind = 'successful' if want_correct else 'unsuccessful'
    logger.warning(f"No {kind} example found after {max_attempts} attempts")
    return jsonify({
        'error': f'No {kind} example found after {max_attempts} attempts'
    }), 404


@app.route('/api/models/<model_id>/successful_example', methods=['GET'])
def get_successful_example(model_id: str):
    """Return a random test example the model classified correctly."""
    return find_example(model_id, want_correct=True, max_attempts=100)


@app.route('/api/models/<model_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(model_id: str):
    """Return a random test example the model classified incorrectly."""
    return find_example(model_id, want_correct=False, max_attempts=200)


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> None:
    logger.info(f"Starting server at http://localhost:{settings.port}/ (data: {settings.data_dir})")

    # Load the test split in the background so examples and accuracy work
    job_id = new_job('test_loading')
    socketio.start_background_task(load_test_data_task, job_id)

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=settings.port,
            debug=not settings.is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {settings.port} is already in use.")
            sys.exit(1)
        else:
            raise


if __name__ == '__main__':
    main()
