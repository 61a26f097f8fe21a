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
Archiver Module

Manifest and archive creation, naming and listing.
"""

from .index import (
    Archive,
    ArchiveEntry,
    Manifest,
    archive_name,
    build_manifest,
    create_archive,
    list_archives,
    load_manifest,
    parse_archive_timestamp,
    read_manifest_from_archive,
    resolve_roots,
    select_latest,
    write_manifest,
)

__all__ = [
    'Archive',
    'ArchiveEntry',
    'Manifest',
    'archive_name',
    'build_manifest',
    'create_archive',
    'list_archives',
    'load_manifest',
    'parse_archive_timestamp',
    'read_manifest_from_archive',
    'resolve_roots',
    'select_latest',
    'write_manifest',
]
