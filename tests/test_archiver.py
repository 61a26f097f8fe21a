import json
import os
import tarfile
from dataclasses import replace
from datetime import datetime

import pytest

from panelmigrate.modules.archiver import (
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
)
from panelmigrate.utils.checksummer import compute_sha256, seal
from panelmigrate.utils.errors import IntegrityError, PreconditionError

from tests.utils import rel, snapshot_of

NOW = datetime(2026, 10, 18, 10, 0, 0)


@pytest.fixture
def manifest(config):
    return build_manifest(config, snapshot_of(("php74", "php81")), backup_date="2026-10-18T10:00:00+00:00")


def test_archive_name_and_timestamp_round_trip():
    name = archive_name("aapanel", NOW)
    assert name == "aapanel_20261018-100000.tar.gz"
    assert parse_archive_timestamp(name, "aapanel") == NOW
    assert parse_archive_timestamp("other_20261018-100000.tar.gz", "aapanel") is None
    assert parse_archive_timestamp("aapanel_20261318-100000.tar.gz", "aapanel") is None


def test_select_latest_uses_name_timestamp():
    names = [
        "/backups/aapanel_20250101-000000.tar.gz",
        "/backups/aapanel_20261018-100000.tar.gz\n",
        "/backups/aapanel_20260901-235959.tar.gz",
        "/backups/aapanel_latest.tar.gz",
    ]
    assert select_latest(names, "aapanel") == "/backups/aapanel_20261018-100000.tar.gz"
    assert select_latest(["readme.txt"], "aapanel") is None


def test_manifest_document_shape(manifest):
    data = manifest.to_dict()

    assert data["app_name"] == "aaPanel Migration Tool"
    assert data["version"] == "1.2.0"
    assert data["database"] == {"engine": "mysql", "version": "5.7.40"}
    assert data["php"] == {"versions": ["php74", "php81"]}
    assert Manifest.from_json(manifest.to_json()) == manifest


def test_manifest_without_capture_time_uses_backup_date():
    data = {
        "app_name": "aaPanel Migration Tool",
        "version": "1.0",
        "os": "Ubuntu 20.04",
        "database": {"engine": "mysql", "version": "NONE"},
        "php": {"versions": []},
        "backup_date": "2024-05-01T00:00:00",
    }
    manifest = Manifest.from_dict(data)
    assert manifest.environment.captured_at == "2024-05-01T00:00:00"
    assert not manifest.environment.has_database


def test_malformed_manifest_raises_value_error():
    with pytest.raises(ValueError):
        Manifest.from_dict({"app_name": "x"})


def test_resolve_roots_skips_missing_and_nested(tmp_path):
    (tmp_path / "a" / "b").mkdir(parents=True)
    (tmp_path / "c").mkdir()
    roots = [str(tmp_path / "a"), str(tmp_path / "missing"), str(tmp_path / "a" / "b"), str(tmp_path / "c")]

    included, skipped = resolve_roots(roots)
    assert included == [str(tmp_path / "a"), str(tmp_path / "c")]
    assert skipped == [str(tmp_path / "missing")]


def test_create_archive_packs_manifest_first_then_roots(config, host_root, manifest):
    archive = create_archive(config, manifest, now=NOW)

    assert os.path.basename(archive.path) == "aapanel_20261018-100000.tar.gz"
    assert not os.path.exists(archive.path + ".partial")
    assert archive.size == os.path.getsize(archive.path)

    with tarfile.open(archive.path, "r:gz") as tar:
        names = tar.getnames()
    assert names[0] == "migration.json"
    assert rel(host_root / "www/wwwroot/example.com/index.php") in names
    assert rel(host_root / "etc/crontab") in names

    assert load_manifest(config.manifest_path) == manifest


def test_create_archive_reports_skipped_roots(config, host_root, manifest):
    archive = create_archive(config, manifest, now=NOW)

    assert str(host_root / "etc/supervisor") in archive.skipped_roots
    assert str(host_root / "var/spool/cron") in archive.skipped_roots
    # vhost/nginx lives under panel and is packed once
    assert str(host_root / "www/server/panel/vhost/nginx") not in archive.included_roots
    assert len(archive.included_roots) == 6


def test_create_archive_without_roots_fails(config, tmp_path, manifest):
    with pytest.raises(PreconditionError) as excinfo:
        create_archive(config, manifest, roots=[str(tmp_path / "nothing-here")], now=NOW)

    assert excinfo.value.check == "no backup roots present"
    assert list_archives(config.backup_dir, config.prefix) == []


def test_create_archive_into_missing_directory_fails(config, tmp_path, manifest):
    config = replace(config, backup_dir=str(tmp_path / "does-not-exist"))

    with pytest.raises(PreconditionError) as excinfo:
        create_archive(config, manifest, now=NOW)
    assert excinfo.value.check == "archive target not writable"


def test_list_archives_newest_first(config, manifest):
    older = create_archive(config, manifest, now=datetime(2026, 1, 1, 0, 0, 0))
    newer = create_archive(config, manifest, now=NOW)
    seal(newer.path)
    # A newer mtime on the older archive must not change the order
    os.utime(older.path, None)

    entries = list_archives(config.backup_dir, config.prefix)
    assert [e.path for e in entries] == [newer.path, older.path]
    assert [e.has_digest for e in entries] == [True, False]


def test_read_manifest_from_archive(config, manifest, tmp_path):
    archive = create_archive(config, manifest, now=NOW)
    dest = tmp_path / "extracted.json"

    restored = read_manifest_from_archive(archive.path, config.manifest_name, str(dest))
    assert restored == manifest
    assert json.loads(dest.read_text())["php"]["versions"] == ["php74", "php81"]


def test_read_manifest_from_archive_without_manifest(tmp_path):
    archive = tmp_path / "aapanel_20261018-100000.tar.gz"
    payload = tmp_path / "payload.txt"
    payload.write_text("x")
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(str(payload), arcname="www/wwwroot/payload.txt")

    with pytest.raises(IntegrityError):
        read_manifest_from_archive(str(archive), "migration.json", str(tmp_path / "out.json"))


def test_unchanged_inputs_give_identical_archives(config, manifest):
    first = create_archive(config, manifest, now=datetime(2026, 10, 18, 10, 0, 0))
    second = create_archive(config, manifest, now=datetime(2026, 10, 18, 11, 30, 0))

    assert first.path != second.path
    assert compute_sha256(first.path) == compute_sha256(second.path)


def test_roots_packed_in_configured_order(config, host_root, manifest):
    archive = create_archive(config, manifest, now=NOW)

    with tarfile.open(archive.path, "r:gz") as tar:
        names = tar.getnames()
    top_level = [name for name in names if name in {rel(root) for root in archive.included_roots}]
    assert top_level == [rel(root) for root in archive.included_roots]
    assert archive.included_roots[:3] == [
        str(host_root / "www/wwwroot"),
        str(host_root / "www/server/data"),
        str(host_root / "www/server/panel"),
    ]
