"""Tests for the amre-maintenance and amre-ingest command lines."""

import json
import os
from unittest.mock import patch

import pytest

from amre.config import AmreSettings
from amre.ingest import cli as ingest_cli
from amre.maintenance import cli as maintenance_cli


@pytest.fixture
def in_memory_settings():
    with patch.dict(os.environ, {}, clear=True):
        return AmreSettings()


@pytest.fixture
def quiet_cli():
    with patch.object(maintenance_cli, "configure_cli"), patch.object(ingest_cli, "configure_cli"):
        yield


# ---------------------------------------------------------------------------
# amre-maintenance
# ---------------------------------------------------------------------------


def test_maintenance_parser_job_options():
    parser = maintenance_cli.build_parser()
    args = parser.parse_args(["backfill", "--batch-size", "10", "--source", "file", "--dry-run"])
    assert (args.job, args.batch_size, args.source, args.dry_run) == ("backfill", 10, "file", True)

    args = parser.parse_args(["dedup", "--threshold", "0.9", "--user", "u1"])
    assert (args.threshold, args.user) == (0.9, "u1")

    args = parser.parse_args(["purge-orphans", "e1", "e2"])
    assert args.entry_ids == ["e1", "e2"]


def test_maintenance_parser_rejects_unknown_source():
    with pytest.raises(SystemExit):
        maintenance_cli.build_parser().parse_args(["backfill", "--source", "fax"])


def test_maintenance_cycle_prints_json_report(quiet_cli, in_memory_settings, capsys):
    with patch.object(maintenance_cli, "get_settings", return_value=in_memory_settings):
        code = maintenance_cli.main(["cycle", "--dry-run"])
    assert code == 0
    report = json.loads(capsys.readouterr().out)
    assert set(report) >= {"backfill", "dedup", "reap", "stopped_early"}
    assert report["backfill"]["dry_run"] is True


def test_maintenance_purge_orphans(quiet_cli, in_memory_settings, capsys):
    with patch.object(maintenance_cli, "get_settings", return_value=in_memory_settings):
        code = maintenance_cli.main(["purge-orphans", "missing-id"])
    assert code == 0
    assert json.loads(capsys.readouterr().out) == {"purged": 0}


def test_maintenance_exits_nonzero_when_engine_fails(quiet_cli, in_memory_settings):
    with patch.object(maintenance_cli, "get_settings", return_value=in_memory_settings), \
            patch.object(maintenance_cli.MemoryEngine, "start", return_value=False):
        assert maintenance_cli.main(["reap"]) == 1


# ---------------------------------------------------------------------------
# amre-ingest
# ---------------------------------------------------------------------------


def test_ingest_requires_user():
    with pytest.raises(SystemExit):
        ingest_cli.build_parser().parse_args(["docs"])


def test_ingest_dry_run_lists_files(quiet_cli, tmp_path, capsys):
    (tmp_path / "a.md").write_text("alpha")
    (tmp_path / "b.py").write_text("print('skip')")
    (tmp_path / "build").mkdir()
    (tmp_path / "build" / "c.md").write_text("gamma")

    code = ingest_cli.main([str(tmp_path), "--user", "u1", "--exclude", "build", "--dry-run"])
    assert code == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "discovered=1"
    assert lines[1].endswith("a.md")


def test_ingest_writes_entries_and_reports(quiet_cli, in_memory_settings, tmp_path, capsys):
    (tmp_path / "notes.txt").write_text("Dentist on Tuesday.")
    with patch.object(ingest_cli, "get_settings", return_value=in_memory_settings):
        code = ingest_cli.main([str(tmp_path), "--user", "u1", "--tag", "health"])
    assert code == 0
    result = json.loads(capsys.readouterr().out)
    assert result["files_ingested"] == 1
    assert result["entries_written"] == 1
