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

"""Logging configuration for the model server."""
import logging
import sys
from pathlib import Path

LOG_FILE = 'model_server.log'
LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(threadName)s] - %(name)s - %(message)s'

# Request lines from werkzeug and hub download chatter stay out of INFO output
QUIET_LOGGERS = ('werkzeug', 'urllib3', 'filelock', 'huggingface_hub')


def setup_logging(log_dir: Path, debug: bool = False) -> Path:
    """Configure root logging to `<log_dir>/model_server.log` and stdout.

    Args:
        log_dir: Directory to store log files
        debug: Enable debug level logging, including third-party request logs

    Returns:
        Path of the log file.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE

    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured. Level: {logging.getLevelName(level)}, Log file: {log_file}")
    return log_file
