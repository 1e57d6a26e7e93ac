"""Tests for the backup CLI via CliRunner."""

from __future__ import annotations

from pathlib import Path

from click.testing import CliRunner

from bulliondesk.cli import main
from bulliondesk.secrets import BACKUP_KEY, FileKeyValueStore


def _invoke(*args: str):
    return CliRunner().invoke(main, ["backup", *args])


def _with_key(home: Path) -> None:
    result = _invoke("key", "set", "--home", str(home), "--key", "a long passphrase")
    assert result.exit_code == 0, result.output


class TestKey:
    """Tests for backup key set."""

    def test_set(self, tmp_home: Path) -> None:
        _with_key(tmp_home)
        assert FileKeyValueStore(tmp_home).get(BACKUP_KEY) == "a long passphrase"
        mode = (tmp_home / "security" / "secrets.json").stat().st_mode & 0o777
        assert mode == 0o600

    def test_too_short(self, tmp_home: Path) -> None:
        result = _invoke("key", "set", "--home", str(tmp_home), "--key", "short")
        assert result.exit_code == 1
        assert "8 characters" in result.output


class TestExportImport:
    """Tests for export, list, import and gc."""

    def test_export_without_key_fails(self, tmp_home: Path, tmp_path: Path) -> None:
        result = _invoke("export", "--home", str(tmp_home), "--dest", str(tmp_path / "out"))
        assert result.exit_code == 1
        assert "Encryption key not found" in result.output

    def test_export_without_destination_fails(self, tmp_home: Path) -> None:
        _with_key(tmp_home)
        result = _invoke("export", "--home", str(tmp_home))
        assert result.exit_code == 1
        assert "Cannot access storage location" in result.output

    def test_full_cycle(self, tmp_home: Path, tmp_path: Path) -> None:
        _with_key(tmp_home)
        out = tmp_path / "out"

        exported = _invoke("export", "--home", str(tmp_home), "--dest", str(out))
        assert exported.exit_code == 0, exported.output
        files = list(out.glob("export_all_*.encrypted"))
        assert len(files) == 1

        listed = _invoke("list", "--home", str(tmp_home))
        assert listed.exit_code == 0
        assert files[0].name in listed.output

        imported = _invoke("import", str(files[0]), "--home", str(tmp_home), "--no")
        assert imported.exit_code == 0, imported.output
        assert "Import complete" in imported.output

        gc = _invoke("gc", "--home", str(tmp_home))
        assert gc.exit_code == 0
        assert "0 orphaned" in gc.output

        log = _invoke("log", "--home", str(tmp_home))
        assert "EXPORT" in log.output
        assert "IMPORT" in log.output

    def test_today_export(self, tmp_home: Path, tmp_path: Path) -> None:
        _with_key(tmp_home)
        out = tmp_path / "out"
        result = _invoke("export", "--home", str(tmp_home), "--dest", str(out), "--today")
        assert result.exit_code == 0, result.output
        assert not list(out.glob("export_all_*"))
        assert len(list(out.glob("export_*.encrypted"))) == 1

    def test_import_corrupt_file(self, tmp_home: Path, tmp_path: Path) -> None:
        _with_key(tmp_home)
        bogus = tmp_path / "bogus.encrypted"
        bogus.write_bytes(b"nonsense")
        result = _invoke("import", str(bogus), "--home", str(tmp_home))
        assert result.exit_code == 1
        assert "Invalid encryption key or corrupted backup file." in result.output


class TestAuto:
    """Tests for backup auto."""

    def test_enable_status_run_disable(self, tmp_home: Path, tmp_path: Path) -> None:
        _with_key(tmp_home)
        out = tmp_path / "auto"

        enabled = _invoke("auto", "enable", "--home", str(tmp_home), "--dest", str(out))
        assert enabled.exit_code == 0, enabled.output

        ran = _invoke("auto", "run", "--home", str(tmp_home))
        assert ran.exit_code == 0, ran.output
        assert "succeeded" in ran.output
        assert (out / "autobackup.encrypted").exists()

        again = _invoke("auto", "run", "--home", str(tmp_home))
        assert "not_due" in again.output

        status = _invoke("auto", "status", "--home", str(tmp_home))
        assert status.exit_code == 0
        assert "yes" in status.output

        disabled = _invoke("auto", "disable", "--home", str(tmp_home))
        assert disabled.exit_code == 0
        skipped = _invoke("auto", "run", "--home", str(tmp_home))
        assert "disabled" in skipped.output

    def test_enable_without_destination(self, tmp_home: Path) -> None:
        result = _invoke("auto", "enable", "--home", str(tmp_home))
        assert result.exit_code == 1
        assert "--dest" in result.output
