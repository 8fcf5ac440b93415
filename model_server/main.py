# Copyright 2025 LLM Inference Service Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Main entry point for the local multi-model inference server."""
import atexit
import logging
import sys
from typing import Optional

from flask import Flask

from .api.routes import create_routes
from .config import ServerConfig, load_model_catalog, parse_arguments
from .core.engine import GenerationEngine
from .core.service import InferenceService
from .core.session_tracker import SessionTracker
from .errors import ConfigError, ModelServerError
from .models.capacity import CapacityGuard
from .models.lifecycle import LifecycleCoordinator
from .models.registry import ModelRegistry
from .runtime.base import InferenceRuntime
from .utils.gpu_monitor import MemoryProbe, create_probe
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


def create_app(config: ServerConfig, runtime: Optional[InferenceRuntime] = None,
               probe: Optional[MemoryProbe] = None) -> Flask:
    """Create and configure the Flask application.

    `runtime` and `probe` default to llama.cpp and the probe matching
    `config.device`.

    Raises:
        ConfigError: if the model catalog or the preload target is invalid
    """
    setup_logging(config.log_dir, config.debug)

    app = Flask(__name__)
    app.config['DEBUG'] = config.debug

    logger.info("Initializing core components...")

    descriptors = load_model_catalog(config.models_config, config.max_tokens_limit, config.max_temperature)
    registry = ModelRegistry(descriptors)

    if probe is None:
        probe = create_probe(config.device, config.gpu_index)
    guard = CapacityGuard(probe, config.safety_margin)
    logger.info(f"Capacity guard on {config.device} with safety margin {config.safety_margin:.0%}")

    if runtime is None:
        from .runtime.llama import LlamaCppRuntime
        runtime = LlamaCppRuntime(n_gpu_layers=config.n_gpu_layers, main_gpu=config.gpu_index,
                                  verbose=config.debug)

    coordinator = LifecycleCoordinator(registry, runtime, guard, config.unload_policy)
    tracker = SessionTracker()
    service = InferenceService(coordinator, GenerationEngine(runtime), tracker,
                               relay_buffer=config.relay_buffer, request_timeout=config.request_timeout)
    logger.info(f"Lifecycle coordinator ready (unload policy: {config.unload_policy})")

    app.register_blueprint(create_routes(service, coordinator, tracker, probe, config))
    app.extensions['model_server'] = {
        'coordinator': coordinator,
        'service': service,
        'tracker': tracker,
        'probe': probe,
    }
    logger.info("API routes registered")

    if config.preload:
        if config.preload not in registry:
            raise ConfigError(f"Preload model '{config.preload}' is not in the catalog")
        try:
            coordinator.load(config.preload)
            coordinator.set_active(config.preload)
        except ModelServerError as e:
            logger.error(f"Preload of '{config.preload}' failed: {e}")
            logger.warning("Server will start with no active model")

    return app


def main():
    """Main entry point."""
    try:
        config = parse_arguments()
        logger.info(f"Starting model server on {config.host}:{config.port}")

        app = create_app(config)
        atexit.register(app.extensions['model_server']['coordinator'].shutdown)

        logger.info("=" * 60)
        logger.info("Model Server Starting")
        logger.info("=" * 60)
        logger.info(f"Server starting on http://{config.host}:{config.port}")
        logger.info(f"Health check at http://{config.host}:{config.port}/health")
        logger.info("=" * 60)

        app.run(
            host=config.host,
            port=config.port,
            debug=config.debug,
            threaded=True,
            use_reloader=False  # the reloader would load every model twice
        )

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.critical(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
