"""
HOMESERVER Panel Migration Tool
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import os
import sys
import json
import logging
from pathlib import Path

LOGGER_NAME = "panelmigrate"


def setup_logging(debug: bool = False) -> None:
    """
    Log to stdout only; the operator owns redirection to a file.

    Args:
        debug (bool): Emit DEBUG records as well as INFO and above.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler.setFormatter(unified_format)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.addHandler(console_handler)
    logger.propagate = False
    logger.info("=" * 80)
    logger.info("PANEL MIGRATION SESSION STARTED")
    logger.info(f"Command: {' '.join(sys.argv)}")
    logger.info(f"Working Directory: {os.getcwd()}")
    logger.info(f"Python Version: {sys.version.split()[0]}")
    logger.info("=" * 80)


def log_message(message, level="INFO"):
    """
    Log a message through the shared migration logger.
    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    logger = logging.getLogger(LOGGER_NAME)
    if level == "ERROR":
        logger.error(message)
    elif level == "WARNING":
        logger.warning(message)
    elif level == "DEBUG":
        logger.debug(message)
    else:
        logger.info(message)


def get_module_version(module_path: str) -> str:
    """
    Get the schema version from a package's index.json file.
    
    Args:
        module_path (str): Path to the directory holding index.json
        
    Returns:
        str: The schema version from index.json, or "unknown" if not found
    """
    try:
        index_path = Path(module_path) / "index.json"
        with open(index_path, 'r') as f:
            config = json.load(f)
            return config.get("metadata", {}).get("schema_version", "unknown")
    except (OSError, ValueError) as e:
        log_message(f"Failed to read version from {module_path}: {e}", "ERROR")
        return "unknown"
