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
Failure taxonomy for the migration pipeline.

Lower layers raise one of these instead of returning bare booleans so the
CLI can print the failure class and the specific check that failed, and map
each class to its own exit code.
"""

from typing import Optional

PRECONDITION = "Precondition"
INTEGRITY = "Integrity"
ENVIRONMENT_CONFLICT = "Environment-conflict"
TRANSPORT = "Transport"
ABORTED = "Aborted"

EXIT_CODES = {
    PRECONDITION: 2,
    INTEGRITY: 3,
    ENVIRONMENT_CONFLICT: 4,
    TRANSPORT: 5,
    ABORTED: 6,
}


class MigrationError(Exception):
    """Base class for fatal migration failures."""

    failure_class = "Error"

    def __init__(self, check: str, detail: Optional[str] = None):
        self.check = check
        self.detail = detail
        message = f"{check}: {detail}" if detail else check
        super().__init__(message)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.failure_class, 1)

    def describe(self) -> str:
        return f"{self.failure_class}: {self}"


class PreconditionError(MigrationError):
    """Missing privilege, missing local tool, unusable backup directory."""
    failure_class = PRECONDITION


class LockError(PreconditionError):
    """Another migration operation holds the backup directory."""
    pass


class IntegrityError(MigrationError):
    """Digest mismatch, unreadable archive or missing required content."""
    failure_class = INTEGRITY


class EnvironmentConflictError(MigrationError):
    """Destination software conflicts with the recorded environment."""
    failure_class = ENVIRONMENT_CONFLICT


class TransportError(MigrationError):
    """Remote host unreachable, nothing to fetch, or a transfer failed."""
    failure_class = TRANSPORT


class AbortedByOperator(MigrationError):
    """The operator declined a required confirmation."""
    failure_class = ABORTED
