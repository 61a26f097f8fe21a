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
Panel Migration Tool

Moves a panel-managed web host to a replacement server: backup on the old
host, verified download over ssh, and a reconciled restore on the new one.
"""

import os

from .utils.index import get_module_version

__version__ = get_module_version(os.path.dirname(os.path.abspath(__file__)))

from .index import main, run_backup, run_verify, run_download, run_restore, run_list

__all__ = [
    '__version__',
    'main',
    'run_backup',
    'run_verify',
    'run_download',
    'run_restore',
    'run_list',
]
