import pathlib
import subprocess
import sys
from unittest import mock

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import student_provision as sp


def test_resource_statements_are_scoped_to_one_schema():
    statements = sp.render_resource_statements("al01", "Secret1234567890", "localhost")

    assert statements == [
        "CREATE DATABASE IF NOT EXISTS `al01`;",
        "CREATE USER IF NOT EXISTS 'al01'@'localhost' IDENTIFIED BY 'Secret1234567890';",
        "ALTER USER 'al01'@'localhost' IDENTIFIED BY 'Secret1234567890';",
        "GRANT ALL PRIVILEGES ON `al01`.* TO 'al01'@'localhost';",
        "FLUSH PRIVILEGES;",
    ]


def test_resource_statements_without_password_leave_user_untouched():
    statements = sp.render_resource_statements("al01", None, "localhost")
    assert not any("IDENTIFIED BY" in stmt for stmt in statements)
    assert "GRANT ALL PRIVILEGES ON `al01`.* TO 'al01'@'localhost';" in statements


@pytest.mark.parametrize(
    "name, password, host",
    [
        ("al01`; DROP DATABASE x; --", "Secret1234567890", "localhost"),
        ("al01", "pa'ss", "localhost"),
        ("al01", "Secret1234567890", "local'host"),
    ],
)
def test_resource_statements_refuse_unsafe_values(name, password, host):
    with pytest.raises(ValueError):
        sp.render_resource_statements(name, password, host)


def _mariadb(password="adminpw", **overrides):
    settings = sp.DatabaseSettings(**overrides)
    return sp.MariaDBBackend(settings, admin_password=password)


def test_admin_password_is_passed_through_environment(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return mock.Mock(returncode=0, stdout="1\n", stderr="")

    monkeypatch.setattr(sp.subprocess, "run", fake_run)

    _mariadb(host="db.internal", admin_user="dbadmin").verify_connection()

    cmd, kwargs = calls[0]
    assert cmd[0] == "mysql"
    assert cmd[-2:] == ["-e", "SELECT 1"]
    assert ["-u", "dbadmin"] == cmd[cmd.index("-u") : cmd.index("-u") + 2]
    assert ["-h", "db.internal"] == cmd[cmd.index("-h") : cmd.index("-h") + 2]
    assert "adminpw" not in " ".join(cmd)
    assert kwargs["env"]["MYSQL_PWD"] == "adminpw"
    assert kwargs["timeout"] == 10


def test_failed_connection_check_is_a_precondition_error(monkeypatch):
    def fake_run(cmd, **kwargs):
        return mock.Mock(returncode=1, stdout="", stderr="ERROR 1045 (28000): Access denied")

    monkeypatch.setattr(sp.subprocess, "run", fake_run)

    with pytest.raises(sp.PreconditionError, match="Access denied"):
        _mariadb().verify_connection()


def test_connection_check_timeout_is_a_precondition_error(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(sp.subprocess, "run", fake_run)

    with pytest.raises(sp.PreconditionError, match="Timed out"):
        _mariadb(connect_timeout=3).verify_connection()


def test_statement_batch_is_sent_on_stdin(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return mock.Mock(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(sp.subprocess, "run", fake_run)

    _mariadb().ensure_resource("al01", "Secret1234567890")

    cmd, kwargs = calls[0]
    assert "Secret1234567890" not in " ".join(cmd)
    assert "CREATE DATABASE IF NOT EXISTS `al01`;" in kwargs["input"]
    assert kwargs["input"].rstrip().endswith("FLUSH PRIVILEGES;")


@pytest.mark.parametrize(
    "stderr, expected",
    [
        ("ERROR 2013 (HY000): Lost connection to server during query", sp.DatabaseConnectionLost),
        ("ERROR 2002 (HY000): Can't connect to local server", sp.DatabaseConnectionLost),
        ("ERROR 1064 (42000): You have an error in your SQL syntax", sp.DatabaseBackendError),
    ],
)
def test_statement_failures_are_classified(monkeypatch, stderr, expected):
    monkeypatch.setattr(
        sp.subprocess, "run", lambda cmd, **kwargs: mock.Mock(returncode=1, stdout="", stderr=stderr)
    )

    with pytest.raises(expected) as excinfo:
        _mariadb().execute_batch(["SELECT 1;"])
    if expected is sp.DatabaseBackendError:
        assert not isinstance(excinfo.value, sp.DatabaseConnectionLost)


def test_resource_exists_reads_schema_listing(monkeypatch):
    outputs = iter(["al01\n", ""])
    monkeypatch.setattr(
        sp.subprocess,
        "run",
        lambda cmd, **kwargs: mock.Mock(returncode=0, stdout=next(outputs), stderr=""),
    )
    backend = _mariadb()

    assert backend.resource_exists("al01") is True
    assert backend.resource_exists("zz99") is False


def test_system_backend_builds_shadow_utils_commands(monkeypatch):
    calls = []

    def fake_run_command(cmd, check=True, input_text=None, env=None, timeout=None):
        calls.append((cmd, input_text))
        return mock.Mock(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(sp, "run_command", fake_run_command)
    backend = sp.SystemAccountBackend(sp.AccountSettings())

    backend.create_account("al01", pathlib.Path("/var/www/students/al01"), "/sbin/nologin", "sftpusers", "Ada Lovelace")
    backend.add_to_group("al01", "sftpusers")
    backend.set_password("al01", "Secret1234567890")

    assert calls[0][0] == [
        "useradd",
        "--badname",
        "-M",
        "-d",
        "/var/www/students/al01",
        "-s",
        "/sbin/nologin",
        "-G",
        "sftpusers",
        "-c",
        "Ada Lovelace",
        "al01",
    ]
    assert calls[1][0] == ["usermod", "-a", "-G", "sftpusers", "al01"]
    assert calls[2] == (["chpasswd"], "al01:Secret1234567890\n")


def test_system_backend_wraps_command_failures(monkeypatch):
    def fake_run_command(cmd, check=True, input_text=None, env=None, timeout=None):
        raise subprocess.CalledProcessError(9, cmd, "", "useradd: user 'al01' already exists")

    monkeypatch.setattr(sp, "run_command", fake_run_command)
    backend = sp.SystemAccountBackend(sp.AccountSettings())

    with pytest.raises(sp.AccountBackendError, match="already exists"):
        backend.create_account("al01", pathlib.Path("/tmp/al01"), "/sbin/nologin", "sftpusers", "")


def test_system_backend_reports_missing_tools_as_precondition(monkeypatch):
    def fake_run_command(cmd, check=True, input_text=None, env=None, timeout=None):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(sp, "run_command", fake_run_command)

    with pytest.raises(sp.PreconditionError):
        sp.SystemAccountBackend(sp.AccountSettings()).set_password("al01", "Secret1234567890")


def test_system_backend_detects_existing_index(tmp_path):
    backend = sp.SystemAccountBackend(sp.AccountSettings())
    assert backend.has_index(tmp_path) is False
    (tmp_path / "index.php").write_text("<?php echo 'hi';", encoding="utf-8")
    assert backend.has_index(tmp_path) is True


def test_system_backend_copies_template_contents(tmp_path):
    template = tmp_path / "skel"
    (template / "css").mkdir(parents=True)
    (template / "index.html").write_text("<h1>Welcome</h1>", encoding="utf-8")
    destination = tmp_path / "public_html"
    destination.mkdir()

    sp.SystemAccountBackend(sp.AccountSettings()).copy_template(template, destination)

    assert (destination / "index.html").read_text(encoding="utf-8") == "<h1>Welcome</h1>"
    assert (destination / "css").is_dir()


def test_capabilities_report_missing_tools():
    caps = sp.Capabilities(privileged=True, available_tools=frozenset({"mysql"}))
    assert caps.missing_tools(["useradd", "mysql", "chpasswd"]) == ["chpasswd", "useradd"]
