import pathlib
import sys
from unittest import mock

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import lamp_sftp_setup
import student_provision as sp
from config_block import ConfigWriter, ReconcileResult

LEGACY_SSHD = """\
Port 22
PasswordAuthentication no
Subsystem sftp /usr/libexec/openssh/sftp-server

Match Group sftpusers
    ChrootDirectory /sftp/%u
    ForceCommand internal-sftp
"""


def test_sshd_blocks_migrate_legacy_configuration(tmp_path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(LEGACY_SSHD, encoding="utf-8")
    blocks = lamp_sftp_setup.sshd_blocks("sftpusers", pathlib.Path("/var/www/students"))
    writer = ConfigWriter(backup_dir=tmp_path / "backups")

    assert writer.upsert_blocks(sshd, blocks) is ReconcileResult.CHANGED
    assert writer.upsert_blocks(sshd, blocks) is ReconcileResult.UNCHANGED

    lines = sshd.read_text(encoding="utf-8").splitlines()
    assert lines[:3] == ["Port 22", "PasswordAuthentication yes", "Subsystem sftp internal-sftp"]
    assert "    ChrootDirectory /var/www/students/%u" in lines
    assert "    ChrootDirectory /sftp/%u" not in lines
    assert lines.count("Match Group sftpusers") == 1


def test_global_directives_land_before_match_sections(tmp_path):
    sshd = tmp_path / "sshd_config"
    sshd.write_text("Port 22\nMatch User admin\n    X11Forwarding yes\n", encoding="utf-8")
    blocks = lamp_sftp_setup.sshd_blocks("sftpusers", pathlib.Path("/var/www/students"))

    ConfigWriter().upsert_blocks(sshd, blocks)

    lines = sshd.read_text(encoding="utf-8").splitlines()
    first_match = lines.index("Match User admin")
    assert lines.index("Subsystem sftp internal-sftp") < first_match
    assert lines.index("PasswordAuthentication yes") < first_match
    assert lines.index("Match Group sftpusers") > first_match


def test_configure_sshd_restarts_only_on_change(tmp_path, monkeypatch):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(LEGACY_SSHD, encoding="utf-8")
    calls = []
    monkeypatch.setattr(lamp_sftp_setup, "run_command", lambda cmd, check=True: calls.append(cmd))
    bootstrap = lamp_sftp_setup.HostBootstrap(
        sp.AccountSettings(), ConfigWriter(), dry_run=False, sshd_config=sshd
    )

    assert bootstrap.configure_sshd() is True
    assert bootstrap.configure_sshd() is False
    assert calls == [["systemctl", "restart", "sshd"]]


def test_dry_run_leaves_sshd_config_untouched(tmp_path, monkeypatch):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(LEGACY_SSHD, encoding="utf-8")
    monkeypatch.setattr(
        lamp_sftp_setup, "run_command", mock.Mock(side_effect=AssertionError("no commands in dry-run"))
    )
    bootstrap = lamp_sftp_setup.HostBootstrap(
        sp.AccountSettings(), ConfigWriter(dry_run=True), dry_run=True, sshd_config=sshd
    )

    assert bootstrap.configure_sshd() is True
    assert sshd.read_text(encoding="utf-8") == LEGACY_SSHD


def test_package_installation_skips_preinstalled(monkeypatch, caplog):
    def fake_which(name):
        return {"dnf": "/usr/bin/dnf", "rpm": "/usr/bin/rpm"}.get(name)

    monkeypatch.setattr(lamp_sftp_setup.shutil, "which", fake_which)
    run_calls = []

    def fake_run(cmd, capture_output=True, text=True, check=False):
        run_calls.append(cmd)
        return mock.Mock(returncode=0 if cmd[-1] == "httpd" else 1, stdout="", stderr="")

    monkeypatch.setattr(lamp_sftp_setup.subprocess, "run", fake_run)
    installs = []
    monkeypatch.setattr(lamp_sftp_setup, "run_command", lambda cmd, check=True: installs.append(cmd))

    caplog.set_level("INFO")
    bootstrap = lamp_sftp_setup.HostBootstrap(
        sp.AccountSettings(), ConfigWriter(), dry_run=False, packages=["httpd", "php"]
    )
    bootstrap.install_packages()

    assert installs[-1] == ["/usr/bin/dnf", "-y", "install", "php"]
    assert any("already installed" in record.message for record in caplog.records)


def test_missing_package_manager_is_tolerated_in_dry_run(monkeypatch, caplog):
    monkeypatch.setattr(lamp_sftp_setup.shutil, "which", lambda name: None)
    caplog.set_level("WARNING")

    lamp_sftp_setup.HostBootstrap(sp.AccountSettings(), ConfigWriter(dry_run=True), dry_run=True).install_packages()

    assert any("Package manager not available" in record.message for record in caplog.records)


def test_main_dry_run_makes_no_changes(tmp_path, monkeypatch):
    sshd = tmp_path / "sshd_config"
    sshd.write_text(LEGACY_SSHD, encoding="utf-8")
    monkeypatch.setattr(lamp_sftp_setup.shutil, "which", lambda name: None)

    exit_code = lamp_sftp_setup.main(["--skip-packages", "--sshd-config", str(sshd)])

    assert exit_code == 0
    assert sshd.read_text(encoding="utf-8") == LEGACY_SSHD
    assert sorted(p.name for p in tmp_path.iterdir()) == ["sshd_config"]
