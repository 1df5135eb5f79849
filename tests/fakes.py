"""In-memory account and database backends for pipeline tests."""
import pathlib
import re
import sys
from typing import Dict, List, Optional, Sequence, Set, Tuple

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import student_provision as sp


class FakeAccountBackend(sp.AccountBackend):
    def __init__(self, settings: Optional[sp.AccountSettings] = None, groups=("sftpusers",)):
        super().__init__(settings or sp.AccountSettings(students_root=pathlib.Path("/srv/students")))
        self.groups: Set[str] = set(groups)
        self.accounts: Dict[str, dict] = {}
        self.directories: Dict[pathlib.Path, Tuple[str, str, int]] = {}
        self.files: Set[pathlib.Path] = set()
        self.template_files: Tuple[str, ...] = ("index.html",)
        self.fail_for: Set[str] = set()
        self.create_calls: List[str] = []
        self.password_history: Dict[str, List[str]] = {}

    def group_exists(self, group):
        return group in self.groups

    def account_exists(self, name):
        return name in self.accounts

    def in_group(self, name, group):
        return group in self.accounts[name]["groups"]

    def create_account(self, name, home, shell, group, comment):
        if name in self.fail_for:
            raise sp.AccountBackendError(f"useradd refused {name}")
        self.create_calls.append(name)
        self.accounts[name] = {
            "home": home,
            "shell": shell,
            "groups": {group},
            "comment": comment,
            "password": None,
        }

    def add_to_group(self, name, group):
        self.accounts[name]["groups"].add(group)

    def set_password(self, name, password):
        self.accounts[name]["password"] = password
        self.password_history.setdefault(name, []).append(password)

    def ensure_directory(self, path, owner, group, mode):
        self.directories[path] = (owner, group, mode)

    def copy_template(self, source, destination):
        for name in self.template_files:
            self.files.add(destination / name)

    def has_index(self, directory):
        return (directory / "index.html") in self.files or (directory / "index.php") in self.files

    def template_available(self, source):
        return bool(self.template_files)


_CREATE_DB = re.compile(r"^CREATE DATABASE IF NOT EXISTS `(\w+)`;$")
_CREATE_USER = re.compile(r"^CREATE USER IF NOT EXISTS '(\w+)'@'([^']+)' IDENTIFIED BY '(\w+)';$")
_ALTER_USER = re.compile(r"^ALTER USER '(\w+)'@'([^']+)' IDENTIFIED BY '(\w+)';$")
_GRANT = re.compile(r"^GRANT ALL PRIVILEGES ON `(\w+)`\.\* TO '(\w+)'@'([^']+)';$")


class FakeDatabaseBackend(sp.DatabaseBackend):
    def __init__(self, grant_host="localhost"):
        super().__init__(grant_host=grant_host)
        self.connected = True
        self.schemas: Set[str] = set()
        self.users: Dict[Tuple[str, str], str] = {}
        self.grants: Set[Tuple[str, str, str]] = set()
        self.batches: List[Sequence[str]] = []
        self.fail_for: Set[str] = set()
        self.lose_connection_for: Set[str] = set()
        self.verify_calls = 0

    def verify_connection(self):
        self.verify_calls += 1
        if not self.connected:
            raise sp.PreconditionError("Unable to connect to MariaDB with the provided credentials.")

    def resource_exists(self, name):
        if name in self.lose_connection_for:
            raise sp.DatabaseConnectionLost("ERROR 2013 (HY000): Lost connection to server")
        return name in self.schemas

    def execute_batch(self, statements):
        target = _CREATE_DB.match(statements[0]).group(1)
        if target in self.fail_for:
            raise sp.DatabaseBackendError(f"ERROR 1044 (42000): Access denied to database '{target}'")
        self.batches.append(list(statements))
        for statement in statements:
            match = _CREATE_DB.match(statement)
            if match:
                self.schemas.add(match.group(1))
                continue
            match = _CREATE_USER.match(statement)
            if match:
                self.users.setdefault((match.group(1), match.group(2)), match.group(3))
                continue
            match = _ALTER_USER.match(statement)
            if match:
                self.users[(match.group(1), match.group(2))] = match.group(3)
                continue
            match = _GRANT.match(statement)
            if match:
                self.grants.add(match.groups())
