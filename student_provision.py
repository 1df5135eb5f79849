#!/usr/bin/env python3
"""Batch provisioning of student web hosting accounts.

Each row of the input CSV (``first_name,last_name,student_id``) becomes:

* an SFTP-only Linux account chrooted to ``<students_root>/<id>`` and member of
  the shared ``sftpusers`` group,
* a ``public_html`` directory served by Apache's userdir module,
* a MariaDB schema and user, both named after the canonical identifier, with
  all privileges on that schema only.

Both passwords are regenerated on every run (``--rotate always``, the
default) and written to a timestamped credentials CSV.  Re-running the tool
against an already provisioned fleet is safe: accounts, directories, schemas
and grants are only created when missing.

Rows that cannot be provisioned are announced as they occur and listed in a
separate failures CSV; they never abort the batch.  Failed preconditions
(missing privileges, tools, group or database connectivity) abort the run
before anything is changed.
"""
from __future__ import annotations

import argparse
import csv
import dataclasses
import datetime as _dt
import enum
import grp
import json
import logging
import os
import pathlib
import pwd
import re
import secrets
import shutil
import string
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older runtimes
    import tomli as tomllib  # type: ignore[assignment]

from config_block import ConfigBlock, ConfigBlockError, ConfigWriter, ReconcileResult

LOG = logging.getLogger(__name__)

DEFAULT_STUDENTS_ROOT = pathlib.Path("/var/www/students")
DEFAULT_GROUP = "sftpusers"
NOLOGIN_SHELL = "/sbin/nologin"
REPORT_COLUMNS = ("student_id", "linux_username", "linux_password", "mysql_username", "mysql_password")
FAILURE_COLUMNS = ("student_id", "status", "reason", "linux_password", "os_account", "database")

# Rejection reasons reported by the normalizer and the pipeline.
EMPTY_AFTER_NORMALIZATION = "empty_after_normalization"
HEADER_ROW = "header_row"
BLANK_ROW = "blank_row"
DUPLICATE_IN_BATCH = "duplicate_in_batch"


class ProvisioningError(RuntimeError):
    """Base class for provisioning failures."""


class PreconditionError(ProvisioningError):
    """The run cannot start (or continue) because a prerequisite is unmet."""


class AccountBackendError(ProvisioningError):
    """An account, group or directory operation failed for a single identity."""


class DatabaseBackendError(ProvisioningError):
    """A database statement batch failed for a single identity."""


class DatabaseConnectionLost(DatabaseBackendError):
    """The administrative database connection went away mid-batch."""


class RotationPolicy(enum.Enum):
    ALWAYS = "always"
    CREATED_ONLY = "created-only"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class AccountSettings:
    """Where and how Linux accounts are created."""

    students_root: pathlib.Path = DEFAULT_STUDENTS_ROOT
    group: str = DEFAULT_GROUP
    shell: str = NOLOGIN_SHELL
    template_dir: pathlib.Path = pathlib.Path("/etc/skel/public_html")
    rotate: RotationPolicy = RotationPolicy.ALWAYS

    def home_for(self, identifier: str) -> pathlib.Path:
        return self.students_root / identifier


@dataclasses.dataclass(frozen=True)
class DatabaseSettings:
    """Administrative MariaDB connection and grant scope."""

    admin_user: str = "root"
    host: Optional[str] = None
    grant_host: str = "localhost"
    connect_timeout: int = 10
    client: str = "mysql"


@dataclasses.dataclass(frozen=True)
class ApacheSettings:
    module_conf: pathlib.Path = pathlib.Path("/etc/httpd/conf.modules.d/00-userdir.conf")
    userdir_conf: pathlib.Path = pathlib.Path("/etc/httpd/conf.d/student_userdir.conf")
    service: str = "httpd"


@dataclasses.dataclass(frozen=True)
class ProvisionConfig:
    """Configuration threaded through every component of a run."""

    accounts: AccountSettings = dataclasses.field(default_factory=AccountSettings)
    database: DatabaseSettings = dataclasses.field(default_factory=DatabaseSettings)
    apache: ApacheSettings = dataclasses.field(default_factory=ApacheSettings)
    output_dir: pathlib.Path = pathlib.Path(".")
    domain: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "ProvisionConfig":
        accounts_section = _section(data, "accounts")
        database_section = _section(data, "database")
        apache_section = _section(data, "apache")
        report_section = _section(data, "report")

        defaults = AccountSettings()
        rotate_raw = _optional_str(accounts_section, "accounts.rotate", defaults.rotate.value)
        try:
            rotate = RotationPolicy(rotate_raw)
        except ValueError as exc:
            choices = ", ".join(policy.value for policy in RotationPolicy)
            raise ValueError(f"accounts.rotate must be one of: {choices}") from exc
        accounts = AccountSettings(
            students_root=pathlib.Path(
                _optional_str(accounts_section, "accounts.students_root", str(defaults.students_root))
            ),
            group=_optional_str(accounts_section, "accounts.group", defaults.group),
            shell=_optional_str(accounts_section, "accounts.shell", defaults.shell),
            template_dir=pathlib.Path(
                _optional_str(accounts_section, "accounts.template_dir", str(defaults.template_dir))
            ),
            rotate=rotate,
        )

        db_defaults = DatabaseSettings()
        timeout = database_section.get("connect_timeout", db_defaults.connect_timeout)
        if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
            raise TypeError("database.connect_timeout must be a positive integer")
        host = database_section.get("host")
        if host is not None and not isinstance(host, str):
            raise TypeError("database.host must be a string if provided")
        grant_host = _optional_str(database_section, "database.grant_host", db_defaults.grant_host)
        if not _SQL_HOST.match(grant_host):
            raise ValueError(f"database.grant_host {grant_host!r} is not a valid MariaDB host")
        database = DatabaseSettings(
            admin_user=_optional_str(database_section, "database.user", db_defaults.admin_user),
            host=host or None,
            grant_host=grant_host,
            connect_timeout=timeout,
            client=_optional_str(database_section, "database.client", db_defaults.client),
        )

        apache_defaults = ApacheSettings()
        apache = ApacheSettings(
            module_conf=pathlib.Path(
                _optional_str(apache_section, "apache.module_conf", str(apache_defaults.module_conf))
            ),
            userdir_conf=pathlib.Path(
                _optional_str(apache_section, "apache.userdir_conf", str(apache_defaults.userdir_conf))
            ),
            service=_optional_str(apache_section, "apache.service", apache_defaults.service),
        )

        output_dir = pathlib.Path(_optional_str(report_section, "report.output_dir", "."))
        return cls(accounts=accounts, database=database, apache=apache, output_dir=output_dir)


def _section(data: Mapping[str, object], name: str) -> Mapping[str, object]:
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise TypeError(f"[{name}] section must be a table in the configuration")
    return section


def _optional_str(section: Mapping[str, object], key: str, default: str) -> str:
    value = section.get(key.rsplit(".", 1)[-1], default)
    if not isinstance(value, str) or not value:
        raise TypeError(f"{key} must be a non-empty string")
    return value


DEFAULT_CONFIG_PATH = pathlib.Path(__file__).with_name("student_provision.toml")


def load_provision_config(path: Optional[pathlib.Path] = None) -> ProvisionConfig:
    """Load a :class:`ProvisionConfig` from the provided TOML file.

    Without an explicit ``path`` the manifest shipped next to this module is
    used when present, otherwise the built-in defaults apply.
    """

    config_path = path or DEFAULT_CONFIG_PATH
    if path is None and not config_path.exists():
        LOG.debug("No configuration manifest at %s; using defaults", config_path)
        return ProvisionConfig()
    with config_path.open("rb") as fh:
        data = tomllib.load(fh)
    if not isinstance(data, Mapping):
        raise TypeError("Configuration root must be a table")
    return ProvisionConfig.from_mapping(data)


# ---------------------------------------------------------------------------
# Identifier normalization and credentials
# ---------------------------------------------------------------------------

_DISALLOWED_CHARS = re.compile(r"[^a-z0-9_]")
_STUDENT_ID_HEADER = re.compile(r"^student[ _]?id$", re.IGNORECASE)
_FIRST_NAME_HEADER = re.compile(r"^first[ _]?name$", re.IGNORECASE)
_LAST_NAME_HEADER = re.compile(r"^last[ _]?name$", re.IGNORECASE)


@dataclasses.dataclass(frozen=True)
class BatchRow:
    """One raw line of the input CSV."""

    given_name: str
    family_name: str
    raw_identifier: str

    @classmethod
    def from_fields(cls, fields: Sequence[str]) -> "BatchRow":
        cleaned = [field.replace("\r", "").strip() for field in fields]
        cleaned.extend([""] * (3 - len(cleaned)))
        return cls(given_name=cleaned[0], family_name=cleaned[1], raw_identifier=cleaned[2])

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.given_name, self.family_name) if part)

    @property
    def is_blank(self) -> bool:
        return not (self.given_name or self.family_name or self.raw_identifier)


@dataclasses.dataclass(frozen=True)
class CanonicalIdentity:
    """Filesystem and database safe identity derived from a student ID."""

    id: str
    display_name: str = ""
    source: str = dataclasses.field(default="", compare=False)

    @property
    def was_altered(self) -> bool:
        """``True`` when normalization changed the case or dropped characters."""

        return self.id != self.source.strip()


@dataclasses.dataclass(frozen=True)
class Rejected:
    reason: str
    raw: str = ""


def normalize_identifier(raw: str, display_name: str = "") -> Union[CanonicalIdentity, Rejected]:
    """Map a free-form student ID onto ``[a-z0-9_]+``."""

    stripped = raw.strip()
    if _STUDENT_ID_HEADER.match(stripped):
        return Rejected(HEADER_ROW, raw)
    canonical = _DISALLOWED_CHARS.sub("", stripped.lower())
    if not canonical:
        return Rejected(EMPTY_AFTER_NORMALIZATION, raw)
    return CanonicalIdentity(id=canonical, display_name=display_name, source=raw)


def normalize_row(row: BatchRow) -> Union[CanonicalIdentity, Rejected]:
    if row.is_blank:
        return Rejected(BLANK_ROW, row.raw_identifier)
    if _FIRST_NAME_HEADER.match(row.given_name) or _LAST_NAME_HEADER.match(row.family_name):
        return Rejected(HEADER_ROW, row.raw_identifier)
    return normalize_identifier(row.raw_identifier, row.display_name)


SECRET_ALPHABET = string.ascii_letters + string.digits
MIN_SECRET_LENGTH = 16


def generate_secret(length: int = MIN_SECRET_LENGTH) -> str:
    """Return a random alphanumeric secret from the OS CSPRNG."""

    if length < MIN_SECRET_LENGTH:
        raise ValueError(f"secrets must be at least {MIN_SECRET_LENGTH} characters long")
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


# ---------------------------------------------------------------------------
# Host helpers
# ---------------------------------------------------------------------------


def ensure_root() -> None:
    if os.geteuid() != 0:
        raise PermissionError("student_provision.py requires root privileges to apply changes")


def run_command(
    cmd: List[str],
    check: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    LOG.debug("Executing command: %s", " ".join(cmd))
    result = subprocess.run(
        cmd,
        input=input_text,
        capture_output=True,
        text=True,
        check=False,
        env=dict(env) if env is not None else None,
        timeout=timeout,
    )
    if check and result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, cmd, result.stdout, result.stderr)
    if result.stdout:
        LOG.debug("stdout: %s", result.stdout.strip())
    if result.stderr:
        LOG.debug("stderr: %s", result.stderr.strip())
    return result


def reload_service(name: str) -> None:
    """Reload ``name`` through systemd, falling back to a restart."""

    result = run_command(["systemctl", "reload", name], check=False)
    if result.returncode != 0:
        LOG.info("Reload of %s failed; restarting instead", name)
        run_command(["systemctl", "restart", name])
    LOG.info("Reloaded %s", name)


@dataclasses.dataclass(frozen=True)
class Capabilities:
    """What the current process is allowed and able to do."""

    privileged: bool
    available_tools: FrozenSet[str] = frozenset()

    @classmethod
    def detect(cls, tools: Iterable[str]) -> "Capabilities":
        available = frozenset(tool for tool in tools if shutil.which(tool))
        return cls(privileged=os.geteuid() == 0, available_tools=available)

    def missing_tools(self, required: Iterable[str]) -> List[str]:
        return sorted(set(required) - self.available_tools)


# ---------------------------------------------------------------------------
# OS account backend
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class AccountResult:
    home_path: pathlib.Path
    password: Optional[str]
    created: bool


class AccountBackend(ABC):
    """Idempotent account, group and web directory management."""

    required_tools: Tuple[str, ...] = ()

    def __init__(self, settings: AccountSettings) -> None:
        self.settings = settings

    @abstractmethod
    def group_exists(self, group: str) -> bool:
        """Return ``True`` when ``group`` is defined on the host."""

    @abstractmethod
    def account_exists(self, name: str) -> bool:
        """Return ``True`` when a login named ``name`` exists."""

    @abstractmethod
    def in_group(self, name: str, group: str) -> bool:
        """Return ``True`` when ``name`` is a supplementary member of ``group``."""

    @abstractmethod
    def create_account(self, name: str, home: pathlib.Path, shell: str, group: str, comment: str) -> None:
        """Create the account without creating its home directory."""

    @abstractmethod
    def add_to_group(self, name: str, group: str) -> None:
        """Append ``group`` to the supplementary groups of ``name``."""

    @abstractmethod
    def set_password(self, name: str, password: str) -> None:
        """Overwrite the login password of ``name``."""

    @abstractmethod
    def ensure_directory(self, path: pathlib.Path, owner: str, group: str, mode: int) -> None:
        """Create ``path`` if needed and apply ownership and mode."""

    @abstractmethod
    def copy_template(self, source: pathlib.Path, destination: pathlib.Path) -> None:
        """Copy the contents of ``source`` into ``destination``."""

    @abstractmethod
    def has_index(self, directory: pathlib.Path) -> bool:
        """Return ``True`` when ``directory`` already holds an index page."""

    @abstractmethod
    def template_available(self, source: pathlib.Path) -> bool:
        """Return ``True`` when the seed template directory exists."""

    def ensure_account(
        self,
        identity: CanonicalIdentity,
        group: Optional[str] = None,
        rotate: Optional[RotationPolicy] = None,
    ) -> AccountResult:
        """Create or migrate the account for ``identity``.

        Existing accounts only gain ``group``; other memberships are kept.
        The password is regenerated according to ``rotate`` and returned;
        it cannot be recovered afterwards.
        """

        group = group or self.settings.group
        rotate = rotate or self.settings.rotate
        name = identity.id
        home = self.settings.home_for(name)

        if self.account_exists(name):
            created = False
            if self.in_group(name, group):
                LOG.debug("Account %s already belongs to %s", name, group)
            else:
                self.add_to_group(name, group)
                LOG.info("Added existing account %s to group %s", name, group)
        else:
            self.create_account(name, home, self.settings.shell, group, identity.display_name)
            created = True
            LOG.info("Created account %s", name)

        # The chroot target must stay root owned for sshd to accept it.
        self.ensure_directory(home, "root", "root", 0o755)
        public_html = home / "public_html"
        self.ensure_directory(public_html, name, group, 0o755)
        if self.template_available(self.settings.template_dir) and not self.has_index(public_html):
            self.copy_template(self.settings.template_dir, public_html)
            LOG.info("Seeded %s from %s", public_html, self.settings.template_dir)

        password: Optional[str] = None
        if created or rotate is RotationPolicy.ALWAYS:
            password = generate_secret()
            self.set_password(name, password)
        else:
            LOG.info("Keeping existing password for %s", name)
        return AccountResult(home_path=home, password=password, created=created)


class SystemAccountBackend(AccountBackend):
    """Account backend using ``pwd``/``grp`` and the shadow-utils commands."""

    required_tools = ("useradd", "usermod", "chpasswd")
    INDEX_FILES = ("index.html", "index.php")

    def group_exists(self, group: str) -> bool:
        try:
            grp.getgrnam(group)
        except KeyError:
            return False
        return True

    def account_exists(self, name: str) -> bool:
        try:
            pwd.getpwnam(name)
        except KeyError:
            return False
        return True

    def in_group(self, name: str, group: str) -> bool:
        try:
            entry = grp.getgrnam(group)
        except KeyError:
            return False
        return name in entry.gr_mem

    def create_account(self, name: str, home: pathlib.Path, shell: str, group: str, comment: str) -> None:
        cmd = ["useradd", "--badname", "-M", "-d", str(home), "-s", shell, "-G", group]
        if comment:
            cmd.extend(["-c", comment])
        cmd.append(name)
        self._run(cmd, f"create account {name}")

    def add_to_group(self, name: str, group: str) -> None:
        self._run(["usermod", "-a", "-G", group, name], f"add {name} to {group}")

    def set_password(self, name: str, password: str) -> None:
        self._run(["chpasswd"], f"set password for {name}", input_text=f"{name}:{password}\n")

    def ensure_directory(self, path: pathlib.Path, owner: str, group: str, mode: int) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
            uid = pwd.getpwnam(owner).pw_uid
            gid = grp.getgrnam(group).gr_gid
            os.chown(path, uid, gid)
            os.chmod(path, mode)
        except PermissionError as exc:
            raise PreconditionError(f"Insufficient privileges to manage {path}: {exc}") from exc
        except (KeyError, OSError) as exc:
            raise AccountBackendError(f"Failed to prepare directory {path}: {exc}") from exc
        LOG.debug("Ensured directory %s owned by %s:%s (%s)", path, owner, group, oct(mode))

    def copy_template(self, source: pathlib.Path, destination: pathlib.Path) -> None:
        try:
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as exc:
            # Seed content is a convenience; a failed copy leaves a usable account.
            LOG.warning("Could not copy template %s to %s: %s", source, destination, exc)

    def has_index(self, directory: pathlib.Path) -> bool:
        return any((directory / name).exists() for name in self.INDEX_FILES)

    def template_available(self, source: pathlib.Path) -> bool:
        return source.is_dir()

    def _run(self, cmd: List[str], action: str, input_text: Optional[str] = None) -> None:
        try:
            run_command(cmd, input_text=input_text)
        except FileNotFoundError as exc:
            raise PreconditionError(f"Required command {cmd[0]!r} is not available") from exc
        except PermissionError as exc:
            raise PreconditionError(f"Insufficient privileges to {action}") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
            raise AccountBackendError(f"Failed to {action}: {detail}") from exc


# ---------------------------------------------------------------------------
# Database backend
# ---------------------------------------------------------------------------

_SQL_IDENTIFIER = re.compile(r"^[a-z0-9_]+$")
_SQL_SECRET = re.compile(r"^[A-Za-z0-9]+$")
_SQL_HOST = re.compile(r"^[A-Za-z0-9._%:/-]+$")


def render_resource_statements(name: str, password: Optional[str], host: str) -> List[str]:
    """SQL that idempotently creates the schema and user ``name``.

    With ``password=None`` the user's credentials are left untouched and only
    the schema and grant are (re)applied.
    """

    if not _SQL_IDENTIFIER.match(name):
        raise ValueError(f"Refusing to use {name!r} as a database identifier")
    if not _SQL_HOST.match(host):
        raise ValueError(f"Refusing to use {host!r} as a grant host")
    if password is not None and not _SQL_SECRET.match(password):
        raise ValueError("Database passwords must be alphanumeric")

    account = f"'{name}'@'{host}'"
    statements = [f"CREATE DATABASE IF NOT EXISTS `{name}`;"]
    if password is not None:
        statements.append(f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY '{password}';")
        statements.append(f"ALTER USER {account} IDENTIFIED BY '{password}';")
    statements.append(f"GRANT ALL PRIVILEGES ON `{name}`.* TO {account};")
    statements.append("FLUSH PRIVILEGES;")
    return statements


class DatabaseBackend(ABC):
    """Idempotent per-identity schema, user and grant management."""

    required_tools: Tuple[str, ...] = ()

    def __init__(self, grant_host: str = "localhost") -> None:
        self.grant_host = grant_host

    @abstractmethod
    def verify_connection(self) -> None:
        """Raise :class:`PreconditionError` unless a round trip succeeds."""

    @abstractmethod
    def resource_exists(self, name: str) -> bool:
        """Return ``True`` when the schema ``name`` already exists."""

    @abstractmethod
    def execute_batch(self, statements: Sequence[str]) -> None:
        """Run ``statements`` on the administrative connection."""

    def ensure_resource(self, name: str, password: Optional[str]) -> None:
        self.execute_batch(render_resource_statements(name, password, self.grant_host))
        LOG.info("Ensured database %s and user %s@%s", name, name, self.grant_host)


# mysql client errors that mean the server is unreachable rather than a
# statement being rejected.
_CONNECTION_ERROR_CODES = ("ERROR 2002", "ERROR 2003", "ERROR 2006", "ERROR 2013", "ERROR 1045")


class MariaDBBackend(DatabaseBackend):
    """Database backend driving the ``mysql`` command-line client.

    The administrative password only ever reaches the child process through
    ``MYSQL_PWD`` so it never shows up in process listings.
    """

    def __init__(self, settings: DatabaseSettings, admin_password: Optional[str] = None) -> None:
        super().__init__(grant_host=settings.grant_host)
        self.settings = settings
        self.admin_password = admin_password
        self.required_tools = (settings.client,)
        self._lock = threading.Lock()

    def _command(self) -> List[str]:
        cmd = [
            self.settings.client,
            "--batch",
            "--skip-column-names",
            f"--connect-timeout={self.settings.connect_timeout}",
            "-u",
            self.settings.admin_user,
        ]
        if self.settings.host:
            cmd.extend(["-h", self.settings.host])
        return cmd

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.admin_password is not None:
            env["MYSQL_PWD"] = self.admin_password
        return env

    def _timeout(self) -> float:
        return float(self.settings.connect_timeout) * 3

    def verify_connection(self) -> None:
        try:
            with self._lock:
                run_command(
                    self._command() + ["-e", "SELECT 1"],
                    env=self._env(),
                    timeout=self.settings.connect_timeout,
                )
        except FileNotFoundError as exc:
            raise PreconditionError(f"MariaDB client {self.settings.client!r} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise PreconditionError(
                f"Timed out after {self.settings.connect_timeout}s connecting to MariaDB"
            ) from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip()
            raise PreconditionError(
                f"Unable to connect to MariaDB with the provided credentials: {detail}"
            ) from exc
        LOG.info("Verified MariaDB connection as %s", self.settings.admin_user)

    def resource_exists(self, name: str) -> bool:
        if not _SQL_IDENTIFIER.match(name):
            raise ValueError(f"Refusing to use {name!r} as a database identifier")
        query = f"SELECT SCHEMA_NAME FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = '{name}';"
        result = self._execute(query)
        return bool(result.stdout.strip())

    def execute_batch(self, statements: Sequence[str]) -> None:
        LOG.debug("Executing %d administrative statements", len(statements))
        self._execute("\n".join(statements) + "\n")

    def _execute(self, sql: str) -> subprocess.CompletedProcess[str]:
        try:
            with self._lock:
                return run_command(self._command(), input_text=sql, env=self._env(), timeout=self._timeout())
        except subprocess.TimeoutExpired as exc:
            raise DatabaseConnectionLost("Timed out waiting for MariaDB") from exc
        except FileNotFoundError as exc:
            raise DatabaseConnectionLost(f"MariaDB client {self.settings.client!r} disappeared") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
            if detail.startswith(_CONNECTION_ERROR_CODES):
                raise DatabaseConnectionLost(detail) from exc
            raise DatabaseBackendError(detail) from exc


# ---------------------------------------------------------------------------
# Outcomes and report
# ---------------------------------------------------------------------------


class OutcomeStatus(enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class ProvisioningOutcome:
    """Result of provisioning one batch row."""

    source: str
    status: OutcomeStatus
    identity: Optional[CanonicalIdentity] = None
    os_password: Optional[str] = dataclasses.field(default=None, repr=False)
    db_password: Optional[str] = dataclasses.field(default=None, repr=False)
    error: Optional[str] = None
    os_account_ready: bool = False
    db_resource_ready: bool = False
    home_path: Optional[pathlib.Path] = None

    @property
    def identifier(self) -> str:
        return self.identity.id if self.identity is not None else self.source

    @property
    def succeeded(self) -> bool:
        return self.status is not OutcomeStatus.FAILED

    @property
    def partial(self) -> bool:
        return self.os_account_ready and not self.db_resource_ready

    @property
    def silent(self) -> bool:
        """Blank and header lines are skipped without being reported."""

        return self.error in (BLANK_ROW, HEADER_ROW)


class ReportWriter:
    """Appends outcomes to the per-run credentials CSV as they complete.

    Every record is flushed and synced immediately: the generated secrets
    exist nowhere else once the process exits.
    """

    def __init__(self, output_dir: pathlib.Path, timestamp: Optional[str] = None) -> None:
        self.output_dir = output_dir
        self.timestamp = timestamp or _dt.datetime.now().strftime("%Y%m%d%H%M%S")
        self.path: Optional[pathlib.Path] = None
        self.failures_path: Optional[pathlib.Path] = None
        self.rows_written = 0
        self.failures_written = 0
        self._fh = None
        self._writer = None
        self._failures_fh = None
        self._failures_writer = None
        self._lock = threading.Lock()

    def __enter__(self) -> "ReportWriter":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> pathlib.Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.path, self._fh = _open_exclusive(self.output_dir, f"student_credentials_{self.timestamp}")
        self._writer = csv.writer(self._fh, lineterminator="\n")
        self._writer.writerow(REPORT_COLUMNS)
        _sync(self._fh)
        LOG.info("Writing credentials to %s", self.path)
        return self.path

    def record(self, outcome: ProvisioningOutcome) -> None:
        if self._writer is None:
            raise RuntimeError("ReportWriter.open() must be called before record()")
        with self._lock:
            if outcome.succeeded:
                name = outcome.identifier
                self._writer.writerow(
                    (name, name, outcome.os_password or "", name, outcome.db_password or "")
                )
                _sync(self._fh)
                self.rows_written += 1
            elif not outcome.silent:
                self._record_failure(outcome)

    def _record_failure(self, outcome: ProvisioningOutcome) -> None:
        if self._failures_writer is None:
            self.failures_path, self._failures_fh = _open_exclusive(
                self.output_dir, f"student_failures_{self.timestamp}"
            )
            self._failures_writer = csv.writer(self._failures_fh, lineterminator="\n")
            self._failures_writer.writerow(FAILURE_COLUMNS)
        self._failures_writer.writerow(
            (
                outcome.identifier,
                outcome.status.value,
                outcome.error or "",
                outcome.os_password or "",
                "ready" if outcome.os_account_ready else "missing",
                "ready" if outcome.db_resource_ready else "missing",
            )
        )
        _sync(self._failures_fh)
        self.failures_written += 1

    def close(self) -> None:
        for fh in (self._fh, self._failures_fh):
            if fh is not None and not fh.closed:
                _sync(fh)
                fh.close()

    def write(self, outcomes: Iterable[ProvisioningOutcome]) -> pathlib.Path:
        """Write all ``outcomes`` in one go and return the report path."""

        with self:
            for outcome in outcomes:
                self.record(outcome)
        if self.path is None:
            raise RuntimeError("ReportWriter.open() did not create a report file")
        return self.path


def _open_exclusive(directory: pathlib.Path, stem: str):
    """Create a new ``0600`` CSV file, never reusing a previous run's name."""

    attempt = 0
    while True:
        suffix = f"-{attempt}" if attempt else ""
        path = directory / f"{stem}{suffix}.csv"
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            attempt += 1
            continue
        return path, os.fdopen(fd, "w", encoding="utf-8", newline="")


def _sync(fh) -> None:
    fh.flush()
    os.fsync(fh.fileno())


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def describe_access(identifier: str, domain: Optional[str]) -> str:
    protocol = "https" if domain else "http"
    return f"{protocol}://{domain or 'your-domain'}/~{identifier}"


class ProvisioningPipeline:
    """Provision every row of a batch against the account and database backends."""

    def __init__(
        self,
        config: ProvisionConfig,
        accounts: AccountBackend,
        database: DatabaseBackend,
        capabilities: Capabilities,
        report: Optional[ReportWriter] = None,
    ) -> None:
        self.config = config
        self.accounts = accounts
        self.database = database
        self.capabilities = capabilities
        self.report = report
        self.outcomes: List[ProvisioningOutcome] = []
        self._seen: Dict[str, str] = {}
        self._registry_lock = threading.Lock()
        self._identity_locks: Dict[str, threading.Lock] = {}

    @property
    def required_tools(self) -> Tuple[str, ...]:
        return tuple(sorted(set(self.accounts.required_tools) | set(self.database.required_tools)))

    def check_preconditions(self) -> None:
        """Abort before any mutation unless every prerequisite holds."""

        if not self.capabilities.privileged:
            raise PreconditionError("This tool must be run as root.")
        missing = self.capabilities.missing_tools(self.required_tools)
        if missing:
            raise PreconditionError(f"Missing required commands: {', '.join(missing)}")
        if not _SQL_HOST.match(self.database.grant_host):
            raise PreconditionError(f"Invalid database grant host {self.database.grant_host!r}")
        group = self.config.accounts.group
        if not self.accounts.group_exists(group):
            raise PreconditionError(
                f"The {group} group does not exist. Run lamp_sftp_setup.py first."
            )
        self.database.verify_connection()
        self.accounts.ensure_directory(self.config.accounts.students_root, "root", "root", 0o755)

    def run(self, rows: Iterable[BatchRow]) -> List[ProvisioningOutcome]:
        """Provision ``rows`` in order.

        Row failures are recorded and the loop continues.  A lost database
        connection records the current row and re-raises; everything recorded
        so far stays in :attr:`outcomes` and in the report.
        """

        for row in rows:
            self.provision_row(row)
        return list(self.outcomes)

    def provision_row(self, row: BatchRow) -> ProvisioningOutcome:
        result = normalize_row(row)
        if isinstance(result, Rejected):
            return self._reject(row, result)

        identity = result
        if identity.was_altered:
            LOG.warning(
                "Normalizing student ID %r to %r for account creation.", row.raw_identifier, identity.id
            )

        with self._registry_lock:
            first_source = self._seen.get(identity.id)
            if first_source is None:
                self._seen[identity.id] = row.raw_identifier
                lock = self._identity_locks.setdefault(identity.id, threading.Lock())
        if first_source is not None:
            LOG.warning(
                "Skipping %r: %s (already provisioned from %r in this batch)",
                row.raw_identifier,
                DUPLICATE_IN_BATCH,
                first_source,
            )
            return self._record(
                ProvisioningOutcome(
                    source=row.raw_identifier,
                    status=OutcomeStatus.FAILED,
                    identity=identity,
                    error=DUPLICATE_IN_BATCH,
                )
            )

        with lock:
            return self._provision_identity(identity)

    def _provision_identity(self, identity: CanonicalIdentity) -> ProvisioningOutcome:
        LOG.info("Provisioning %s...", identity.id)
        rotate = self.config.accounts.rotate
        try:
            account = self.accounts.ensure_account(identity, self.config.accounts.group, rotate)
        except AccountBackendError as exc:
            LOG.error("Failed to provision account %s: %s", identity.id, exc)
            return self._record(
                ProvisioningOutcome(
                    source=identity.source,
                    status=OutcomeStatus.FAILED,
                    identity=identity,
                    error=f"os_account_failed: {exc}",
                )
            )

        try:
            existing = self.database.resource_exists(identity.id)
            db_password: Optional[str] = None
            if not existing or rotate is RotationPolicy.ALWAYS:
                db_password = generate_secret()
            self.database.ensure_resource(identity.id, db_password)
        except DatabaseBackendError as exc:
            LOG.error(
                "Database provisioning failed for %s: %s. The Linux account exists without a "
                "working database; re-run once the database is reachable.",
                identity.id,
                exc,
            )
            outcome = self._record(
                ProvisioningOutcome(
                    source=identity.source,
                    status=OutcomeStatus.FAILED,
                    identity=identity,
                    os_password=account.password,
                    error=f"database_failed: {exc} (os account ready, database missing)",
                    os_account_ready=True,
                    home_path=account.home_path,
                )
            )
            if isinstance(exc, DatabaseConnectionLost):
                raise
            return outcome

        status = OutcomeStatus.CREATED if account.created else OutcomeStatus.UPDATED
        LOG.info("  Web directory: %s", account.home_path / "public_html")
        LOG.info("  Browser URL:   %s", describe_access(identity.id, self.config.domain))
        return self._record(
            ProvisioningOutcome(
                source=identity.source,
                status=status,
                identity=identity,
                os_password=account.password,
                db_password=db_password,
                os_account_ready=True,
                db_resource_ready=True,
                home_path=account.home_path,
            )
        )

    def _reject(self, row: BatchRow, rejection: Rejected) -> ProvisioningOutcome:
        if rejection.reason == BLANK_ROW:
            LOG.debug("Skipping blank row")
        elif rejection.reason == HEADER_ROW:
            LOG.info("Skipping header row")
        else:
            LOG.warning("Skipping entry with invalid student ID %r: %s", row.raw_identifier, rejection.reason)
        return self._record(
            ProvisioningOutcome(source=row.raw_identifier, status=OutcomeStatus.FAILED, error=rejection.reason)
        )

    def _record(self, outcome: ProvisioningOutcome) -> ProvisioningOutcome:
        with self._registry_lock:
            self.outcomes.append(outcome)
        if self.report is not None:
            self.report.record(outcome)
        return outcome


# ---------------------------------------------------------------------------
# Apache userdir
# ---------------------------------------------------------------------------

USERDIR_MARKER = "# Managed by student_provision.py"


def userdir_block(students_root: pathlib.Path) -> ConfigBlock:
    public_html = f"{students_root}/*/public_html"
    body = (
        USERDIR_MARKER,
        "UserDir disabled root",
        "UserDir enabled",
        f"UserDir {public_html}",
        "",
        f'<Directory "{public_html}">',
        "    AllowOverride All",
        "    Options MultiViews Indexes SymLinksIfOwnerMatch IncludesNoExec",
        "    Require all granted",
        "</Directory>",
    )
    return ConfigBlock(tag="student-userdir", body=body, start_pattern=r"^# Managed by \S+")


_COMMENTED_USERDIR_MODULE = re.compile(r"^#\s*(LoadModule\s+userdir_module\b)", re.MULTILINE)


def ensure_userdir_configuration(
    apache: ApacheSettings,
    accounts: AccountSettings,
    writer: ConfigWriter,
) -> bool:
    """Enable mod_userdir for student web roots; return ``True`` on change."""

    changed = False
    if apache.module_conf.exists():
        current = apache.module_conf.read_text(encoding="utf-8")
        enabled = _COMMENTED_USERDIR_MODULE.sub(r"\1", current)
        if enabled != current:
            if writer.write_file(apache.module_conf, enabled) is ReconcileResult.CHANGED:
                changed = True
    else:
        LOG.debug("%s not present; assuming mod_userdir is loaded", apache.module_conf)

    block = userdir_block(accounts.students_root)
    if writer.upsert_block(apache.userdir_conf, block) is ReconcileResult.CHANGED:
        changed = True

    if changed and not writer.dry_run:
        reload_service(apache.service)
    return changed


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def read_batch(path: pathlib.Path) -> List[BatchRow]:
    """Read ``first_name,last_name,student_id`` rows from ``path``."""

    with path.open("r", encoding="utf-8-sig", newline="") as fh:
        return [BatchRow.from_fields(fields) for fields in csv.reader(fh)]


def read_password_file(path: pathlib.Path) -> str:
    try:
        return path.read_text(encoding="utf-8").rstrip("\r\n")
    except OSError as exc:
        raise PreconditionError(f"Cannot read MySQL password file: {path}") from exc


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "-f",
        "--file",
        type=pathlib.Path,
        required=True,
        help="CSV file with firstname,lastname,studentID columns.",
    )
    parser.add_argument(
        "-d",
        "--domain",
        help="Domain used for Apache userdir access (informational output only).",
    )
    parser.add_argument("--mysql-user", help="MariaDB administrative user (default: root).")
    parser.add_argument("--mysql-host", help="MariaDB host (default: local socket).")
    parser.add_argument(
        "--mysql-password-file",
        type=pathlib.Path,
        help="File containing the MariaDB password (MYSQL_PWD is used otherwise).",
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        help="Path to a TOML configuration file describing paths, group and database settings.",
    )
    parser.add_argument(
        "--output-dir",
        type=pathlib.Path,
        help="Directory receiving the credentials report (default: current directory).",
    )
    parser.add_argument(
        "--rotate",
        choices=[policy.value for policy in RotationPolicy],
        help="Password policy for existing accounts (default: always rotate).",
    )
    parser.add_argument(
        "--skip-userdir",
        action="store_true",
        help="Do not touch the Apache userdir configuration.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Increase logging verbosity (use -vv for debug).",
    )
    parser.add_argument(
        "--log-file",
        type=pathlib.Path,
        help="Optional path to write logs in addition to the console output.",
    )
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Logging output format (default: text).",
    )
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    return build_arg_parser().parse_args(argv)


def apply_overrides(config: ProvisionConfig, args: argparse.Namespace) -> ProvisionConfig:
    database = config.database
    if args.mysql_user:
        database = dataclasses.replace(database, admin_user=args.mysql_user)
    if args.mysql_host:
        database = dataclasses.replace(database, host=args.mysql_host)
    accounts = config.accounts
    if args.rotate:
        accounts = dataclasses.replace(accounts, rotate=RotationPolicy(args.rotate))
    return dataclasses.replace(
        config,
        accounts=accounts,
        database=database,
        output_dir=args.output_dir or config.output_dir,
        domain=args.domain or config.domain,
    )


class _JSONLogFormatter(logging.Formatter):
    """Format log records as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - brief output
        created = _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc)
        payload = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


_VERBOSITY_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def configure_logging(verbosity: int, log_file: Optional[pathlib.Path], log_format: str) -> None:
    """Send records from every module to stderr and, optionally, ``log_file``."""

    level = _VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter: logging.Formatter
    if log_format == "json":
        formatter = _JSONLogFormatter()
    else:
        formatter = logging.Formatter("%(levelname)s: %(message)s")

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)


def _summarize(outcomes: Sequence[ProvisioningOutcome], report: ReportWriter, domain: Optional[str]) -> None:
    for outcome in outcomes:
        if outcome.succeeded and outcome.home_path is not None:
            print(f"{outcome.identifier} ({outcome.status.value})")
            print(f"  Web directory: {outcome.home_path / 'public_html'}")
            print(f"  Browser URL:   {describe_access(outcome.identifier, domain)}")
    print(f"Provisioning complete. Credentials saved to {report.path}")
    if report.failures_path is not None:
        print(f"{report.failures_written} row(s) need attention; see {report.failures_path}")


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, args.log_file, args.log_format)

    try:
        try:
            config = apply_overrides(load_provision_config(args.config), args)
        except (TypeError, ValueError, KeyError) as exc:
            raise PreconditionError(f"Invalid configuration: {exc}") from exc
        if args.mysql_password_file:
            admin_password: Optional[str] = read_password_file(args.mysql_password_file)
        else:
            admin_password = os.environ.get("MYSQL_PWD")
        try:
            rows = read_batch(args.file)
        except OSError as exc:
            raise PreconditionError(f"CSV file cannot be read: {args.file} ({exc})") from exc

        accounts = SystemAccountBackend(config.accounts)
        database = MariaDBBackend(config.database, admin_password)
        capabilities = Capabilities.detect(set(accounts.required_tools) | set(database.required_tools))
        pipeline = ProvisioningPipeline(config, accounts, database, capabilities)
        pipeline.check_preconditions()

        if not args.skip_userdir:
            ensure_userdir_configuration(config.apache, config.accounts, ConfigWriter())
    except PreconditionError as exc:
        LOG.error("%s", exc)
        return 1
    except (ConfigBlockError, subprocess.CalledProcessError) as exc:
        LOG.error("Failed to configure Apache userdir access: %s", exc)
        return 1

    report = ReportWriter(config.output_dir)
    pipeline.report = report
    try:
        with report:
            outcomes = pipeline.run(rows)
    except (DatabaseConnectionLost, PreconditionError) as exc:
        LOG.error("Aborting remaining rows: %s", exc)
        LOG.error("Completed rows were saved to %s; re-running the batch is safe.", report.path)
        return 1

    _summarize(outcomes, report, config.domain)
    return 0


if __name__ == "__main__":
    sys.exit(main())
