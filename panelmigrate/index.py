#!/usr/bin/env python3
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
Command-line entry point.

    panel-migrate backup
    panel-migrate verify [ARCHIVE]
    panel-migrate download REMOTE_USER REMOTE_HOST REMOTE_DIR
    panel-migrate restore [--dry-run] [--archive ARCHIVE]
    panel-migrate list

Every fatal failure is printed with its failure class and the check that
failed, and exits non-zero with the code for that class.
"""

import sys
import argparse
import traceback
from typing import List, Optional

from .utils.index import log_message, setup_logging
from .utils.config import MigrationConfig, load_config
from .utils.errors import MigrationError, PreconditionError
from .utils.lock import MigrationLock
from .utils.prompt import ConsolePrompter, Prompter
from .utils.checksummer import raise_for_result, seal, verify
from .modules.inspector import capture
from .modules.archiver import build_manifest, create_archive, list_archives
from .modules.transfer import TransferNegotiator
from .modules.restore import RestoreOrchestrator

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INTERRUPTED = 130


def print_banner(lines: List[str]) -> None:
    print()
    print("=" * 36)
    for line in lines:
        print(line)
    print("=" * 36)
    print()


def run_backup(config: MigrationConfig) -> str:
    """Inspect, archive and seal. Returns the archive path."""
    log_message("[BACKUP] Starting backup process")
    snapshot = capture(config)
    manifest = build_manifest(config, snapshot)
    archive = create_archive(config, manifest)
    digest = seal(archive.path)

    result = verify(archive.path, config.required_prefixes, digest.path, produced_locally=True)
    raise_for_result(result)

    print_banner([
        "✓ BACKUP COMPLETED SUCCESSFULLY",
        "-" * 36,
        f"Backup file   : {archive.path}",
        f"Checksum file : {digest.path}",
        f"Metadata file : {config.manifest_path}",
    ])
    if archive.skipped_roots:
        log_message(f"[BACKUP] Roots not present on this host: {', '.join(archive.skipped_roots)}", "WARNING")
    log_message("[BACKUP] Backup + checksum created successfully")
    return archive.path


def run_verify(config: MigrationConfig, archive_path: Optional[str] = None) -> str:
    if archive_path is None:
        entries = list_archives(config.backup_dir, config.prefix)
        if not entries:
            raise PreconditionError("no backup found", config.backup_dir)
        archive_path = entries[0].path

    log_message(f"[VERIFY] === Backup Verification: {archive_path} ===")
    result = verify(archive_path, config.required_prefixes, produced_locally=False)
    raise_for_result(result)

    print_banner([
        "✓ BACKUP VERIFICATION PASSED",
        "Backup is SAFE to restore",
    ])
    log_message(f"[VERIFY] Backup verification passed (sha256:{result.actual})")
    return archive_path


def run_download(config: MigrationConfig, prompter: Prompter, remote_user: str, remote_host: str,
                 remote_dir: str):
    negotiator = TransferNegotiator(config, prompter)
    fetched = negotiator.fetch(remote_user, remote_host, remote_dir)

    lines = [
        "✓ DOWNLOAD COMPLETED SUCCESSFULLY" if fetched.verified else "⚠ DOWNLOAD COMPLETED, UNVERIFIED",
        "-" * 36,
        f"Backup file   : {fetched.archive_path}",
        f"Checksum file : {fetched.digest_path or 'MISSING on remote (unverifiable)'}",
    ]
    print_banner(lines)
    return fetched


def run_restore(config: MigrationConfig, prompter: Prompter, archive_path: Optional[str] = None):
    orchestrator = RestoreOrchestrator(config, prompter)
    return orchestrator.run(archive_path)


def run_list(config: MigrationConfig) -> int:
    entries = list_archives(config.backup_dir, config.prefix)
    if not entries:
        log_message(f"No backups in {config.backup_dir}")
        return 0

    log_message(f"Backups in {config.backup_dir} (newest first):")
    for entry in entries:
        digest = "sha256 ok" if entry.has_digest else "NO DIGEST"
        log_message(f"  {entry.timestamp:%Y-%m-%d %H:%M:%S}  {entry.size:>14,} bytes  [{digest}]  {entry.path}")
    return len(entries)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="panel-migrate",
                                     description="Snapshot, transfer and restore a panel-managed server")
    parser.add_argument("--config", metavar="PATH", default=None,
                        help="JSON config file overriding the packaged defaults")
    parser.add_argument("--backup-dir", default=None,
                        help="Backup directory (default from config)")
    parser.add_argument("--debug", action="store_true",
                        help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    subparsers.add_parser("backup", help="Create a sealed backup of this host")

    verify_parser = subparsers.add_parser("verify", help="Verify a backup archive")
    verify_parser.add_argument("archive", nargs="?", default=None,
                               help="Archive to verify (default: newest in backup dir)")

    download_parser = subparsers.add_parser("download", help="Fetch the newest backup from the old server")
    download_parser.add_argument("remote_user", help="Old server SSH user (example: root)")
    download_parser.add_argument("remote_host", help="Old server host/IP")
    download_parser.add_argument("remote_dir", help="Backup directory on the old server")

    restore_parser = subparsers.add_parser("restore", help="Restore a backup onto this host")
    restore_parser.add_argument("--dry-run", action="store_true",
                                help="Log every action that would run without changing anything")
    restore_parser.add_argument("--archive", default=None,
                                help="Archive to restore (default: newest in backup dir)")

    subparsers.add_parser("list", help="List backups in the backup directory")
    return parser


def main(argv: Optional[List[str]] = None, prompter: Optional[Prompter] = None) -> int:
    """
    Main entry point. Returns the process exit code.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)
    prompter = prompter or ConsolePrompter()

    try:
        config = load_config(
            args.config,
            backup_dir=args.backup_dir,
            dry_run=getattr(args, "dry_run", False) or None,
        )

        if args.command == "list":
            run_list(config)
            return EXIT_OK

        with MigrationLock(config.backup_dir, args.command):
            if args.command == "backup":
                run_backup(config)
            elif args.command == "verify":
                run_verify(config, args.archive)
            elif args.command == "download":
                run_download(config, prompter, args.remote_user, args.remote_host, args.remote_dir)
            elif args.command == "restore":
                run_restore(config, prompter, args.archive)
        return EXIT_OK

    except MigrationError as e:
        log_message(e.describe(), "ERROR")
        return e.exit_code
    except KeyboardInterrupt:
        log_message("Interrupted by user", "WARNING")
        return EXIT_INTERRUPTED
    except Exception as e:
        log_message(f"Unhandled error: {e}", "ERROR")
        traceback.print_exc()
        return EXIT_UNEXPECTED


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
