"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API with WebSocket support for managing registered models.

This module provides endpoints for:
- Adding, re-specifying, listing and removing models
- Recording training examples
- Training models in the background with real-time progress updates
  via WebSockets, and cancelling running training jobs
- Running inputs through trained models

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks (in production)
- SQLite for model persistence
"""

import sys
import uuid
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO

from fannstore.cancellation import CancellationToken
from fannstore.config import Settings
from fannstore.errors import Cancelled, EmptyDataset, FannStoreError, ModelBusy, NotFound
from fannstore.models import DEFAULT_ERROR_TARGET, DEFAULT_MAX_EPOCHS, ModelSpec
from fannstore.persistence import SQLiteAdapter
from fannstore.registry import ModelRegistry

logger = logging.getLogger(__name__)

# Finished jobs kept in memory for status polling
MAX_FINISHED_JOBS = 100

# Number of progress events emitted over a full training run
PROGRESS_EVENTS = 100


# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging(settings: Settings) -> None:
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
        logging.getLogger('fannstore').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


# ============================================================================
# TRAINING JOBS
# ============================================================================

class TrainingJobs:
    """
    Tracks background training jobs: {job_id: job_info}.

    Finished jobs stay available for status polling until more than
    MAX_FINISHED_JOBS have accumulated. Request handlers and training tasks
    share one table, so every access goes through the lock.
    """

    FINISHED_STATUSES = {'completed', 'failed', 'cancelled'}
    ACTIVE_STATUSES = {'pending', 'training'}

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def create(self, model_name: str, timeout: Optional[float] = None) -> Tuple[str, CancellationToken]:
        self.cleanup_finished()

        job_id = str(uuid.uuid4())
        token = CancellationToken(timeout)
        with self._lock:
            self.jobs[job_id] = {
                'job_id': job_id,
                'model': model_name,
                'status': 'pending',
                'progress': 0,
                'created_at': datetime.now().isoformat()
            }
            self.tokens[job_id] = token
        return job_id, token

    def get(self, job_id: str) -> Dict[str, Any]:
        """Return a snapshot of a job's state."""
        with self._lock:
            if job_id not in self.jobs:
                raise NotFound(f"Training job '{job_id}' not found", job_id=job_id)
            return dict(self.jobs[job_id])

    def update(self, job_id: str, **fields: Any) -> None:
        with self._lock:
            self.jobs[job_id].update(fields)

    def finish(self, job_id: str, status: str, **fields: Any) -> None:
        with self._lock:
            job = self.jobs[job_id]
            job.update(fields)
            job['status'] = status
            job['finished_at'] = datetime.now().isoformat()
            self.tokens.pop(job_id, None)

    def cancel(self, job_id: str) -> Dict[str, Any]:
        job = self.get(job_id)
        with self._lock:
            token = self.tokens.get(job_id)
        if token is not None:
            token.cancel()
            logger.info(f"Cancellation requested for job {job_id}")
        return job

    def active_count(self) -> int:
        with self._lock:
            return sum(
                1 for job in self.jobs.values()
                if job.get('status') in self.ACTIVE_STATUSES
            )

    def cleanup_finished(self) -> int:
        """Drop the oldest finished jobs beyond MAX_FINISHED_JOBS."""
        with self._lock:
            finished = [
                job_id for job_id, job in self.jobs.items()
                if job.get('status') in self.FINISHED_STATUSES
            ]
            excess = finished[:max(0, len(finished) - MAX_FINISHED_JOBS)]
            for job_id in excess:
                del self.jobs[job_id]

        if excess:
            logger.info(f"Cleaned up {len(excess)} finished training job(s)")
        return len(excess)


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def create_app(
    registry: ModelRegistry,
    settings: Optional[Settings] = None
) -> Tuple[Flask, SocketIO]:
    """
    Build the Flask application and its SocketIO server.

    Args:
        registry: Model registry the endpoints operate on
        settings: Server settings (read from the environment if omitted)

    Returns:
        Tuple of (Flask app, SocketIO instance)
    """
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

    # SocketIO enables real-time communication (WebSockets) for training updates
    socketio = SocketIO(
        app,
        cors_allowed_origins="*",
        async_mode=settings.async_mode,
        logger=not settings.is_production,
        engineio_logger=not settings.is_production,
        ping_timeout=60,
        ping_interval=25
    )

    jobs = TrainingJobs()
    app.extensions['fannstore'] = {'registry': registry, 'jobs': jobs}

    @app.errorhandler(FannStoreError)
    def handle_fannstore_error(e: FannStoreError):
        if e.status_code >= 500:
            logger.error(f"{e.kind}: {e.message} {e.details}")
        else:
            logger.warning(f"{e.kind}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    # ------------------------------------------------------------------------
    # STATUS
    # ------------------------------------------------------------------------

    @app.route('/api/status', methods=['GET'])
    def get_status():
        """Return server status with model and active training job counts."""
        return jsonify({
            'status': 'online',
            'models': len(registry),
            'training_jobs': jobs.active_count()
        }), 200

    # ------------------------------------------------------------------------
    # MODELS
    # ------------------------------------------------------------------------

    @app.route('/api/models', methods=['GET'])
    def list_models():
        """List all registered models."""
        return jsonify({'models': registry.list_models()}), 200

    @app.route('/api/models', methods=['POST'])
    def add_model():
        """
        Register a new model.

        Request body:
            {
                'name': 'xor',
                'layers': [2, 3, 1],
                'error_target': 0.001,  # optional
                'max_epochs': 100000    # optional
            }
        """
        data = _json_body()
        spec = ModelSpec(
            name=data.get('name'),
            layers=data.get('layers'),
            error_target=data.get('error_target', DEFAULT_ERROR_TARGET),
            max_epochs=data.get('max_epochs', DEFAULT_MAX_EPOCHS)
        )
        model = registry.add(spec)
        return jsonify(model.summary()), 201

    @app.route('/api/models/<name>', methods=['GET'])
    def get_model(name: str):
        summary = registry.get(name).summary()
        summary['examples'] = registry.datasets.count(name)
        return jsonify(summary), 200

    @app.route('/api/models/<name>', methods=['PUT'])
    def respecify_model(name: str):
        """Change a model's layers or training targets, discarding its weights."""
        data = _json_body()
        model = registry.respecify(
            name,
            layers=data.get('layers'),
            error_target=data.get('error_target'),
            max_epochs=data.get('max_epochs')
        )
        return jsonify(model.summary()), 200

    @app.route('/api/models/<name>', methods=['DELETE'])
    def remove_model(name: str):
        """Delete a model with its weights and examples."""
        registry.remove(name)
        return jsonify({'name': name, 'status': 'deleted'}), 200

    # ------------------------------------------------------------------------
    # EXAMPLES
    # ------------------------------------------------------------------------

    @app.route('/api/models/<name>/examples', methods=['POST'])
    def add_example(name: str):
        """
        Record a training example.

        Request body:
            {'input': [0, 1], 'output': [1], 'raw_data': {...}}
        """
        data = _json_body()
        if 'input' not in data or 'output' not in data:
            return jsonify({
                'error': 'bad_request',
                'message': "'input' and 'output' are required"
            }), 400

        registry.add_example(name, data['input'], data['output'], data.get('raw_data'))
        return jsonify({
            'name': name,
            'examples': registry.datasets.count(name)
        }), 201

    @app.route('/api/models/<name>/examples', methods=['DELETE'])
    def clear_examples(name: str):
        cleared = registry.clear_examples(name)
        return jsonify({'name': name, 'cleared': cleared}), 200

    # ------------------------------------------------------------------------
    # RUN
    # ------------------------------------------------------------------------

    @app.route('/api/models/<name>/run', methods=['POST'])
    def run_model(name: str):
        """Run an input vector through a trained model."""
        data = _json_body()
        if 'input' not in data:
            return jsonify({
                'error': 'bad_request',
                'message': "'input' is required"
            }), 400

        output = registry.run(name, data['input'])
        return jsonify({'name': name, 'output': output}), 200

    # ------------------------------------------------------------------------
    # TRAINING
    # ------------------------------------------------------------------------

    @app.route('/api/models/<name>/train', methods=['POST'])
    def train_model(name: str):
        """
        Start training a model in the background.

        Request body (optional):
            {'timeout': 60}  # seconds before the job is cancelled

        Returns:
            JSON with job_id, model and status
        """
        data = _json_body()
        timeout = data.get('timeout')
        valid = isinstance(timeout, (int, float)) and not isinstance(timeout, bool)
        if timeout is not None and (not valid or timeout <= 0):
            return jsonify({
                'error': 'bad_request',
                'message': 'timeout must be a positive number'
            }), 400

        if registry.is_busy(name):
            raise ModelBusy(f"Model '{name}' is already being trained", model=name)
        if registry.datasets.count(name) == 0:
            raise EmptyDataset(f"No training examples recorded for '{name}'", model=name)

        job_id, token = jobs.create(name, timeout)
        logger.info(f"Created training job {job_id} for model '{name}'")

        # Run training in background so we can return immediately
        socketio.start_background_task(train_model_task, name, job_id, token)

        return jsonify({
            'job_id': job_id,
            'model': name,
            'status': 'training_started'
        }), 202

    def train_model_task(name: str, job_id: str, token: CancellationToken) -> None:
        """
        Background task that trains a model.

        Sends progress updates via WebSocket as training progresses.
        """
        def on_epoch_complete(data: Dict[str, Any]) -> None:
            """Called after each training epoch to record and publish progress."""
            epoch, total = data['epoch'], data['total_epochs']
            progress = (epoch / total) * 100

            jobs.update(
                job_id, status='training', progress=progress,
                epoch=epoch, error_value=data['error']
            )

            every = max(1, total // PROGRESS_EVENTS)
            if epoch % every == 0 or epoch == total:
                socketio.emit('training_update', {
                    'job_id': job_id,
                    'model': name,
                    'epoch': epoch,
                    'total_epochs': total,
                    'error': data['error'],
                    'elapsed_time': data['elapsed_time'],
                    'progress': progress
                })

            # Let other tasks run between epochs
            socketio.sleep(0)

        try:
            logger.info(f"Starting training for job {job_id}")
            final_error = registry.train(
                name, cancel=token, blocking=False, callback=on_epoch_complete
            )

            jobs.finish(job_id, 'completed', final_error=final_error, progress=100)
            logger.info(f"Training completed for job {job_id}: error {final_error:.6g}")

            socketio.emit('training_complete', {
                'job_id': job_id,
                'model': name,
                'status': 'completed',
                'final_error': final_error,
                'progress': 100
            })

        except Cancelled as e:
            logger.info(f"Training job {job_id} cancelled: {e}")
            jobs.finish(job_id, 'cancelled', error=e.to_dict())
            socketio.emit('training_error', {
                'job_id': job_id,
                'model': name,
                'status': 'cancelled',
                'error': e.to_dict()
            })

        except FannStoreError as e:
            logger.error(f"Training failed for job {job_id}: {e}")
            jobs.finish(job_id, 'failed', error=e.to_dict())
            socketio.emit('training_error', {
                'job_id': job_id,
                'model': name,
                'status': 'failed',
                'error': e.to_dict()
            })

        except Exception as e:
            logger.exception(f"Training failed for job {job_id}: {e}")
            jobs.finish(job_id, 'failed', error={'error': 'internal', 'message': str(e)})
            socketio.emit('training_error', {
                'job_id': job_id,
                'model': name,
                'status': 'failed',
                'error': {'error': 'internal', 'message': str(e)}
            })

    @app.route('/api/training/<job_id>', methods=['GET'])
    def get_training_status(job_id: str):
        """Get the current status of a training job."""
        return jsonify(jobs.get(job_id)), 200

    @app.route('/api/training/<job_id>/cancel', methods=['POST'])
    def cancel_training(job_id: str):
        """Request cancellation of a running training job."""
        job = jobs.cancel(job_id)
        return jsonify(job), 202

    return app, socketio


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    settings = Settings.from_env()
    configure_logging(settings)

    registry = ModelRegistry.load(
        SQLiteAdapter(settings.db_path, timeout=settings.io_timeout),
        settings.registry_config()
    )
    app, socketio = create_app(registry, settings)

    logger.info(f"Starting server at http://localhost:{settings.port}/")

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
