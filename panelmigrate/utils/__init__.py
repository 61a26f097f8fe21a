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

"""
Shared utilities for the migration tool: logging, configuration, failure
taxonomy, locking, operator prompts, actions and archive integrity.
"""

from .index import log_message, setup_logging, get_module_version
from .config import MigrationConfig, load_config
from .errors import (
    MigrationError,
    PreconditionError,
    LockError,
    IntegrityError,
    EnvironmentConflictError,
    TransportError,
    AbortedByOperator,
)
from .lock import MigrationLock
from .prompt import Prompter, ConsolePrompter
from .actions import Action, ActionKind, ActionResult, CommandRunner, DryRunRunner, make_runner
from .checksummer import VerifyStatus, VerificationResult, seal, verify

__all__ = [
    'log_message',
    'setup_logging',
    'get_module_version',
    'MigrationConfig',
    'load_config',
    'MigrationError',
    'PreconditionError',
    'LockError',
    'IntegrityError',
    'EnvironmentConflictError',
    'TransportError',
    'AbortedByOperator',
    'MigrationLock',
    'Prompter',
    'ConsolePrompter',
    'Action',
    'ActionKind',
    'ActionResult',
    'CommandRunner',
    'DryRunRunner',
    'make_runner',
    'VerifyStatus',
    'VerificationResult',
    'seal',
    'verify',
]
