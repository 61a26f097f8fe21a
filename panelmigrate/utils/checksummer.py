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
Archive sealing and verification.

A sealed archive is paired with a `<archive>.sha256` sidecar in sha256sum
text format. Verification always recomputes the hash from the archive bytes,
then checks that the archive can be listed and that it carries the required
root prefixes. Each of those failures is reported with its own status.
"""

import os
import hashlib
import tarfile
from enum import Enum
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from .index import log_message
from .errors import IntegrityError

DIGEST_SUFFIX = ".sha256"
CHUNK_SIZE = 1024 * 1024


class VerifyStatus(Enum):
    OK = "OK"
    MISMATCH = "MISMATCH"
    MISSING_DIGEST = "MISSING_DIGEST"
    UNREADABLE_ARCHIVE = "UNREADABLE_ARCHIVE"
    MISSING_CONTENT = "MISSING_CONTENT"


@dataclass(frozen=True)
class Digest:
    """A parsed digest sidecar."""
    hexdigest: str
    filename: str
    path: str


@dataclass
class VerificationResult:
    status: VerifyStatus
    archive: str
    digest_path: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    missing_prefixes: List[str] = field(default_factory=list)
    detail: str = ""
    regenerated: bool = False

    @property
    def ok(self) -> bool:
        return self.status == VerifyStatus.OK


def compute_sha256(file_path: str) -> str:
    """Calculate the SHA-256 of a file's exact byte content."""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def digest_path_for(archive_path: str) -> str:
    return f"{archive_path}{DIGEST_SUFFIX}"


def format_digest_line(hexdigest: str, filename: str) -> str:
    return f"{hexdigest}  {filename}\n"


def parse_digest_line(text: str) -> Tuple[str, str]:
    """
    Parse one sha256sum line.

    Accepts text mode (`<hex>  name`) and binary mode (`<hex> *name`).
    Raises ValueError on anything else.
    """
    line = text.strip().splitlines()[0] if text.strip() else ""
    parts = line.split(None, 1)
    if len(parts) != 2:
        raise ValueError(f"malformed digest line: {line!r}")

    hexdigest, filename = parts
    hexdigest = hexdigest.lower()
    if len(hexdigest) != 64 or any(c not in "0123456789abcdef" for c in hexdigest):
        raise ValueError(f"not a sha256 digest: {hexdigest!r}")

    return hexdigest, filename.lstrip("*")


def read_digest(digest_path: str) -> Digest:
    with open(digest_path, "r") as f:
        hexdigest, filename = parse_digest_line(f.read())
    return Digest(hexdigest=hexdigest, filename=filename, path=digest_path)


def seal(archive_path: str) -> Digest:
    """
    Compute the archive digest and write its sidecar.

    Called once, right after the archive is created and before it is exposed
    to any network transfer.
    """
    hexdigest = compute_sha256(archive_path)
    filename = os.path.basename(archive_path)
    digest_path = digest_path_for(archive_path)

    with open(digest_path, "w") as f:
        f.write(format_digest_line(hexdigest, filename))

    log_message(f"[SEAL] sha256:{hexdigest} -> {digest_path}")
    return Digest(hexdigest=hexdigest, filename=filename, path=digest_path)


def _normalize_member(name: str) -> str:
    if name.startswith("./"):
        name = name[2:]
    return name.strip("/")


def list_archive_members(archive_path: str) -> List[str]:
    """Enumerate every member name; raises on any read error."""
    with tarfile.open(archive_path, "r:gz") as tar:
        return [_normalize_member(m.name) for m in tar.getmembers()]


def find_missing_prefixes(members: Iterable[str], required_prefixes: Iterable[str]) -> List[str]:
    names = set(members)
    missing = []
    for prefix in required_prefixes:
        prefix = _normalize_member(prefix)
        if prefix in names:
            continue
        if not any(name.startswith(prefix + "/") for name in names):
            missing.append(prefix)
    return missing


def check_archive_contents(archive_path: str, required_prefixes: Iterable[str]) -> VerificationResult:
    """Structural and content checks only; no digest involved."""
    try:
        members = list_archive_members(archive_path)
    except (tarfile.TarError, OSError, EOFError) as e:
        return VerificationResult(VerifyStatus.UNREADABLE_ARCHIVE, archive_path, detail=str(e))

    missing = find_missing_prefixes(members, required_prefixes)
    if missing:
        return VerificationResult(VerifyStatus.MISSING_CONTENT, archive_path, missing_prefixes=missing,
                                  detail=f"missing required content: {', '.join(missing)}")

    return VerificationResult(VerifyStatus.OK, archive_path, detail=f"{len(members)} entries")


def verify(archive_path: str, required_prefixes: Iterable[str],
           digest_path: Optional[str] = None, produced_locally: bool = False) -> VerificationResult:
    """
    Verify an archive against its digest sidecar and required content.

    Args:
        archive_path: Archive to check
        required_prefixes: Relative root prefixes that must appear in the listing
        digest_path: Sidecar path, defaults to `<archive>.sha256`
        produced_locally: The archive was created by this same run; only then
            may a missing sidecar be regenerated

    Returns:
        VerificationResult: OK, or the first failing check
    """
    digest_path = digest_path or digest_path_for(archive_path)

    if not os.path.isfile(archive_path):
        return VerificationResult(VerifyStatus.UNREADABLE_ARCHIVE, archive_path, digest_path,
                                  detail="archive file not found")

    regenerated = False
    if not os.path.isfile(digest_path):
        if not produced_locally:
            return VerificationResult(VerifyStatus.MISSING_DIGEST, archive_path, digest_path,
                                      detail="digest sidecar not found")
        log_message("[VERIFY] Digest missing for locally produced archive, regenerating", "WARNING")
        seal(archive_path)
        regenerated = True

    try:
        digest = read_digest(digest_path)
    except (OSError, ValueError) as e:
        return VerificationResult(VerifyStatus.MISMATCH, archive_path, digest_path,
                                  detail=f"unreadable digest sidecar: {e}")

    actual = compute_sha256(archive_path)
    if actual != digest.hexdigest:
        return VerificationResult(VerifyStatus.MISMATCH, archive_path, digest_path,
                                  expected=digest.hexdigest, actual=actual,
                                  detail="archive bytes do not match recorded digest")

    if os.path.basename(digest.filename) != os.path.basename(archive_path):
        return VerificationResult(VerifyStatus.MISMATCH, archive_path, digest_path,
                                  expected=digest.hexdigest, actual=actual,
                                  detail=f"digest names {digest.filename}, not {os.path.basename(archive_path)}")

    result = check_archive_contents(archive_path, required_prefixes)
    result.digest_path = digest_path
    result.expected = digest.hexdigest
    result.actual = actual
    result.regenerated = regenerated
    return result


def raise_for_result(result: VerificationResult) -> None:
    """Turn a failed verification into an IntegrityError naming the failed check."""
    if result.ok:
        return

    checks = {
        VerifyStatus.MISMATCH: "digest mismatch",
        VerifyStatus.MISSING_DIGEST: "digest sidecar missing",
        VerifyStatus.UNREADABLE_ARCHIVE: "archive unreadable",
        VerifyStatus.MISSING_CONTENT: "required content missing",
    }
    raise IntegrityError(checks[result.status], f"{result.archive}: {result.detail}")
