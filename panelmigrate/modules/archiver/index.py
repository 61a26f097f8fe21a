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
Archiver

Owns the manifest and the archive: writes the manifest, packs the configured
roots behind it into one gzip-compressed tar, and names the result
`<prefix>_<YYYYMMDD-HHMMSS>.tar.gz`. Also lists and selects archives by the
timestamp embedded in their names.
"""

import os
import re
import gzip
import json
import shutil
import tarfile
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from panelmigrate.utils.index import log_message
from panelmigrate.utils.errors import PreconditionError, IntegrityError
from panelmigrate.utils.checksummer import digest_path_for
from panelmigrate.modules.inspector import EnvironmentSnapshot

ARCHIVE_SUFFIX = ".tar.gz"
PARTIAL_SUFFIX = ".partial"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(frozen=True)
class Manifest:
    """Metadata describing the environment that produced an archive."""
    app_name: str
    version: str
    environment: EnvironmentSnapshot
    backup_date: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app_name": self.app_name,
            "version": self.version,
            "os": self.environment.os,
            "database": {
                "engine": self.environment.database_engine,
                "version": self.environment.database_version,
            },
            "php": {
                "versions": list(self.environment.runtime_versions),
            },
            "captured_at": self.environment.captured_at,
            "backup_date": self.backup_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        try:
            database = data["database"]
            versions = data["php"]["versions"]
            if not isinstance(versions, list):
                raise ValueError("php.versions must be a list")
            environment = EnvironmentSnapshot(
                os=str(data["os"]),
                database_engine=str(database["engine"]),
                database_version=str(database["version"]),
                runtime_versions=tuple(str(v) for v in versions),
                # Manifests written by older tool versions carry no capture time
                captured_at=str(data.get("captured_at", data["backup_date"])),
            )
            return cls(
                app_name=str(data["app_name"]),
                version=str(data["version"]),
                environment=environment,
                backup_date=str(data["backup_date"]),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"invalid manifest: missing or malformed {e}")

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, text: str) -> 'Manifest':
        return cls.from_dict(json.loads(text))


@dataclass
class Archive:
    path: str
    created_at: datetime
    manifest: Manifest
    included_roots: List[str] = field(default_factory=list)
    skipped_roots: List[str] = field(default_factory=list)
    size: int = 0

    @property
    def digest_path(self) -> str:
        return digest_path_for(self.path)


@dataclass(frozen=True)
class ArchiveEntry:
    """An archive found in a backup directory."""
    path: str
    timestamp: datetime
    size: int
    has_digest: bool


def archive_name(prefix: str, when: datetime) -> str:
    return f"{prefix}_{when.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def parse_archive_timestamp(name: str, prefix: str) -> Optional[datetime]:
    """Return the timestamp embedded in an archive name, or None if it is not ours."""
    pattern = rf'^{re.escape(prefix)}_(\d{{8}}-\d{{6}}){re.escape(ARCHIVE_SUFFIX)}$'
    match = re.match(pattern, os.path.basename(name))
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def select_latest(names: Iterable[str], prefix: str) -> Optional[str]:
    """
    Pick the most recent archive by the timestamp in its name.

    File modification times are ignored; they may come from a host with a
    skewed clock.
    """
    candidates = []
    for name in names:
        name = name.strip()
        timestamp = parse_archive_timestamp(name, prefix)
        if timestamp is not None:
            candidates.append((timestamp, name))
    if not candidates:
        return None
    return max(candidates)[1]


def list_archives(backup_dir: str, prefix: str) -> List[ArchiveEntry]:
    """List archives in backup_dir, newest first."""
    try:
        names = os.listdir(backup_dir)
    except OSError:
        return []

    entries = []
    for name in names:
        timestamp = parse_archive_timestamp(name, prefix)
        path = os.path.join(backup_dir, name)
        if timestamp is None or not os.path.isfile(path):
            continue
        entries.append(ArchiveEntry(
            path=path,
            timestamp=timestamp,
            size=os.path.getsize(path),
            has_digest=os.path.isfile(digest_path_for(path)),
        ))
    return sorted(entries, key=lambda e: e.timestamp, reverse=True)


def build_manifest(config, snapshot: EnvironmentSnapshot, backup_date: Optional[str] = None) -> Manifest:
    return Manifest(
        app_name=config.app_name,
        version=config.app_version,
        environment=snapshot,
        backup_date=backup_date or snapshot.captured_at,
    )


def manifest_mtime(manifest: Manifest) -> int:
    try:
        return int(datetime.fromisoformat(manifest.backup_date).timestamp())
    except ValueError:
        return 0


def write_manifest(manifest: Manifest, path: str) -> None:
    with open(path, 'w') as f:
        f.write(manifest.to_json() + "\n")
    log_message(f"Manifest written: {path}", "DEBUG")


def load_manifest(path: str) -> Manifest:
    with open(path, 'r') as f:
        return Manifest.from_json(f.read())


def resolve_roots(roots: Iterable[str]) -> Tuple[List[str], List[str]]:
    """
    Split roots into (present, skipped), keeping the configured order.

    A root nested inside an earlier present root is already covered and is
    not packed a second time.
    """
    included, skipped = [], []
    for root in roots:
        if not os.path.lexists(root):
            log_message(f"[BACKUP] Root not present, skipping: {root}", "WARNING")
            skipped.append(root)
            continue
        normalized = root.rstrip("/")
        if any(normalized == parent or normalized.startswith(parent + "/") for parent in included):
            log_message(f"[BACKUP] Root already covered by a parent root: {root}", "DEBUG")
            continue
        included.append(normalized)
    return included, skipped


def create_archive(config, manifest: Manifest, roots: Optional[Iterable[str]] = None,
                   now: Optional[datetime] = None) -> Archive:
    """
    Pack the manifest and the configured roots into one archive.

    The manifest is written to the backup directory first and stored as the
    archive's first member under its bare name. Roots follow in configured
    order under their absolute paths without the leading slash. The gzip header
    carries no timestamp, so unchanged inputs give identical archive bytes.

    Raises:
        PreconditionError: backup directory not writable, or no root present
    """
    backup_dir = config.backup_dir
    if not os.path.isdir(backup_dir) or not os.access(backup_dir, os.W_OK):
        raise PreconditionError("archive target not writable", backup_dir)

    included, skipped = resolve_roots(config.roots if roots is None else roots)
    if not included:
        raise PreconditionError("no backup roots present", ", ".join(skipped) or "no roots configured")

    write_manifest(manifest, config.manifest_path)

    created_at = (now or datetime.now()).replace(microsecond=0)
    final_path = os.path.join(backup_dir, archive_name(config.prefix, created_at))
    partial_path = final_path + PARTIAL_SUFFIX

    log_message(f"[BACKUP] Packing {len(included)} roots into {final_path}")
    try:
        with open(partial_path, "wb") as raw:
            with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
                with tarfile.open(fileobj=gz, mode="w") as tar:
                    info = tar.gettarinfo(config.manifest_path, arcname=config.manifest_name)
                    # Rewritten every run; stamp it with the capture time instead
                    info.mtime = manifest_mtime(manifest)
                    with open(config.manifest_path, "rb") as f:
                        tar.addfile(info, f)
                    for root in included:
                        log_message(f"[BACKUP]   + {root}")
                        tar.add(root, arcname=root.lstrip("/"))
        os.replace(partial_path, final_path)
    except (OSError, tarfile.TarError) as e:
        if os.path.exists(partial_path):
            os.unlink(partial_path)
        raise PreconditionError("archive write failed", f"{final_path}: {e}")

    size = os.path.getsize(final_path)
    log_message(f"[BACKUP] Archive created: {size:,} bytes")

    return Archive(
        path=final_path,
        created_at=created_at,
        manifest=manifest,
        included_roots=included,
        skipped_roots=skipped,
        size=size,
    )


def read_manifest_from_archive(archive_path: str, manifest_name: str, dest_path: str) -> Manifest:
    """
    Extract only the manifest member and persist it at dest_path.

    Raises:
        IntegrityError: the archive has no readable, well-formed manifest
    """
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            member = None
            for candidate in (manifest_name, f"./{manifest_name}"):
                try:
                    member = tar.getmember(candidate)
                    break
                except KeyError:
                    continue
            if member is None or not member.isfile():
                raise IntegrityError("manifest missing from archive", archive_path)
            source = tar.extractfile(member)
            with source, open(dest_path, "wb") as f:
                shutil.copyfileobj(source, f)
    except (tarfile.TarError, OSError, EOFError) as e:
        raise IntegrityError("archive unreadable", f"{archive_path}: {e}")

    try:
        manifest = load_manifest(dest_path)
    except ValueError as e:
        raise IntegrityError("manifest malformed", str(e))

    log_message(f"Manifest extracted to {dest_path}")
    return manifest
