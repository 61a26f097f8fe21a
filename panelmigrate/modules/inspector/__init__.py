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
Environment Inspector Module

Captures the EnvironmentSnapshot recorded in every backup manifest and
lists runtime extensions on the destination host.
"""

from .index import (
    EnvironmentSnapshot,
    ExtensionLister,
    PhpExtensionLister,
    capture,
    detect_database,
    detect_os,
    detect_runtime_versions,
    parse_mysql_version_output,
    parse_php_modules,
    DB_ENGINE_NONE,
    DB_VERSION_NONE,
)

__all__ = [
    'EnvironmentSnapshot',
    'ExtensionLister',
    'PhpExtensionLister',
    'capture',
    'detect_database',
    'detect_os',
    'detect_runtime_versions',
    'parse_mysql_version_output',
    'parse_php_modules',
    'DB_ENGINE_NONE',
    'DB_VERSION_NONE',
]
