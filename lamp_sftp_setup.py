#!/usr/bin/env python3
"""Bootstrap a RHEL-family host for student web hosting.

Installs Apache, PHP and MariaDB, enables their services, opens the firewall
for HTTP, HTTPS and SSH, and prepares SFTP-only access for the shared
``sftpusers`` group:

* the group, the students root and ``/etc/skel/public_html`` are created,
* ``sshd_config`` is switched to ``internal-sftp`` with password logins and a
  ``Match Group`` block that chroots members to ``<students_root>/%u``,
* SELinux booleans and file contexts are set when SELinux is enforcing.

Every step is idempotent.  Run without ``--apply`` to only report what would
change.  Afterwards run ``mysql_secure_installation`` and provision students
with ``student_provision.py``.
"""
from __future__ import annotations

import argparse
import grp
import logging
import os
import pathlib
import re
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence

from config_block import ConfigBlock, ConfigBlockError, ConfigWriter, ReconcileResult
from student_provision import (
    AccountSettings,
    configure_logging,
    ensure_root,
    load_provision_config,
    run_command,
)

LOG = logging.getLogger(__name__)

DEFAULT_SSHD_CONFIG = pathlib.Path("/etc/ssh/sshd_config")
LAMP_PACKAGES = (
    "httpd",
    "mariadb-server",
    "php",
    "php-cli",
    "php-mysqlnd",
    "php-xml",
    "php-gd",
    "php-mbstring",
    "php-zip",
    "policycoreutils-python-utils",
    "firewalld",
)
SERVICES = ("httpd", "mariadb", "firewalld")
FIREWALL_SERVICES = ("http", "https", "ssh")


class PackageManager(ABC):
    """Simple wrapper around the system package manager."""

    def __init__(self, dry_run: bool) -> None:
        self.dry_run = dry_run

    @classmethod
    def for_system(cls, dry_run: bool) -> "PackageManager":
        for manager_cls in (DnfManager,):
            manager = manager_cls.try_create(dry_run)
            if manager is not None:
                return manager
        raise FileNotFoundError("Neither dnf nor yum package manager was found.")

    @classmethod
    @abstractmethod
    def try_create(cls, dry_run: bool) -> Optional["PackageManager"]:
        """Return an initialised manager when the backend is available."""

    @abstractmethod
    def is_installed(self, package: str) -> bool:
        """Return ``True`` when ``package`` is already present on the host."""

    @abstractmethod
    def install_missing(self, packages: List[str]) -> None:
        """Install the provided packages without performing any additional checks."""

    def install(self, packages: Sequence[str]) -> List[str]:
        """Install whichever of ``packages`` are missing and return them."""

        missing = [pkg for pkg in sorted(set(packages)) if not self._present(pkg)]
        if not missing:
            return missing
        if self.dry_run:
            LOG.info("[dry-run] Would install packages: %s", ", ".join(missing))
        else:
            LOG.info("Installing packages: %s", ", ".join(missing))
            self.install_missing(missing)
        return missing

    def _present(self, package: str) -> bool:
        try:
            present = self.is_installed(package)
        except OSError as exc:
            LOG.warning("Could not query %s, installing it anyway: %s", package, exc)
            return False
        if present:
            LOG.info("Package '%s' is already installed; skipping.", package)
        return present


class DnfManager(PackageManager):
    """Package manager implementation for dnf/yum based systems."""

    def __init__(self, executable: str, dry_run: bool) -> None:
        super().__init__(dry_run)
        self.executable = executable
        self.query_tool = shutil.which("rpm") or "rpm"

    @classmethod
    def try_create(cls, dry_run: bool) -> Optional["PackageManager"]:
        executable = shutil.which("dnf") or shutil.which("yum")
        if not executable:
            return None
        return cls(executable, dry_run)

    def is_installed(self, package: str) -> bool:
        result = subprocess.run(
            [self.query_tool, "-q", package], capture_output=True, text=True, check=False
        )
        return result.returncode == 0

    def install_missing(self, packages: List[str]) -> None:
        # EPEL is optional; hosts without it still get the base stack.
        run_command([self.executable, "-y", "install", "epel-release"], check=False)
        run_command([self.executable, "-y", "install", *packages])


def sshd_blocks(group: str, students_root: pathlib.Path) -> List[ConfigBlock]:
    """Blocks that confine ``group`` members to SFTP inside their web root."""

    match_body = (
        f"Match Group {group}",
        f"    ChrootDirectory {students_root}/%u",
        "    ForceCommand internal-sftp",
        "    PasswordAuthentication yes",
        "    X11Forwarding no",
        "    AllowTcpForwarding no",
    )
    return [
        # Global directives must precede the first Match section.
        ConfigBlock.directive(
            "sftp-subsystem",
            "Subsystem sftp internal-sftp",
            r"^\s*Subsystem\s+sftp\b",
            insert_before=r"^Match\b",
        ),
        ConfigBlock.directive(
            "password-authentication",
            "PasswordAuthentication yes",
            r"^PasswordAuthentication\s",
            insert_before=r"^Match\b",
        ),
        ConfigBlock(
            tag=f"match-group-{group}",
            body=match_body,
            start_pattern=rf"^Match\s+Group\s+{re.escape(group)}\b",
            stop_pattern=r"^Match\b",
        ),
    ]


class HostBootstrap:
    """Apply the LAMP and SFTP baseline to the host."""

    def __init__(
        self,
        accounts: AccountSettings,
        writer: ConfigWriter,
        dry_run: bool,
        sshd_config: pathlib.Path = DEFAULT_SSHD_CONFIG,
        packages: Sequence[str] = LAMP_PACKAGES,
    ) -> None:
        self.accounts = accounts
        self.writer = writer
        self.dry_run = dry_run
        self.sshd_config = sshd_config
        self.packages = list(packages)

    def apply(self, include_packages: bool = True) -> None:
        if include_packages:
            self.install_packages()
            self.configure_services()
            self.configure_firewall()
        self.harden_apache()
        self.setup_sftp_group()
        self.configure_sshd()
        self.set_selinux_contexts()

    def _run(self, cmd: List[str], check: bool = True) -> Optional[subprocess.CompletedProcess[str]]:
        if self.dry_run:
            LOG.info("[dry-run] Would run: %s", " ".join(cmd))
            return None
        return run_command(cmd, check=check)

    def install_packages(self) -> None:
        LOG.info("Installing Apache, PHP, MariaDB, and supporting packages...")
        try:
            manager = PackageManager.for_system(self.dry_run)
        except FileNotFoundError:
            if self.dry_run:
                LOG.warning(
                    "Package manager not available; would install: %s", ", ".join(sorted(self.packages))
                )
                return
            raise
        installed = manager.install(self.packages)
        if not installed:
            LOG.info("All LAMP packages are already present.")

    def configure_services(self) -> None:
        LOG.info("Enabling and starting Apache, MariaDB, and firewalld...")
        for service in SERVICES:
            self._run(["systemctl", "enable", "--now", service])

    def configure_firewall(self) -> None:
        active = run_command(["systemctl", "is-active", "--quiet", "firewalld"], check=False)
        if active.returncode != 0:
            LOG.warning("firewalld is not active; skipping firewall configuration.")
            return
        LOG.info("Configuring the firewall for HTTP, HTTPS, and SFTP...")
        for service in FIREWALL_SERVICES:
            self._run(["firewall-cmd", "--permanent", f"--add-service={service}"])
        self._run(["firewall-cmd", "--reload"])

    def harden_apache(self) -> None:
        LOG.info("Setting default Apache virtual host directory permissions...")
        docroot = pathlib.Path("/var/www/html")
        if not self.dry_run:
            docroot.mkdir(parents=True, exist_ok=True)
        self._run(["chown", "-R", "apache:apache", str(docroot)])
        self._run(["chmod", "-R", "2755", str(docroot)])

    def setup_sftp_group(self) -> None:
        group = self.accounts.group
        LOG.info("Creating shared SFTP group and directories...")
        try:
            grp.getgrnam(group)
        except KeyError:
            self._run(["groupadd", "-f", group])
            LOG.info("Created group %s", group)
        else:
            LOG.info("Group %s already exists", group)

        for path, mode in (
            (self.accounts.students_root, 0o755),
            (self.accounts.template_dir.parent, 0o755),
            (self.accounts.template_dir, 0o755),
        ):
            if self.dry_run:
                LOG.info("[dry-run] Would ensure directory %s (%s)", path, oct(mode))
                continue
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, mode)
        if not self.dry_run:
            os.chown(self.accounts.students_root, 0, 0)

    def configure_sshd(self) -> bool:
        LOG.info("Configuring sshd for SFTP chroot...")
        blocks = sshd_blocks(self.accounts.group, self.accounts.students_root)
        result = self.writer.upsert_blocks(self.sshd_config, blocks)
        if result is ReconcileResult.UNCHANGED:
            LOG.info("%s already matches the SFTP configuration", self.sshd_config)
            return False
        self._run(["systemctl", "restart", "sshd"])
        return True

    def set_selinux_contexts(self) -> None:
        if not shutil.which("getenforce"):
            LOG.warning("SELinux not enforced; skipping context adjustments.")
            return
        mode = run_command(["getenforce"], check=False).stdout.strip()
        if mode == "Disabled":
            LOG.warning("SELinux not enforced; skipping context adjustments.")
            return
        root = str(self.accounts.students_root)
        LOG.info("Configuring SELinux contexts for student web directories...")
        self._run(["setsebool", "-P", "httpd_enable_homedirs", "on"])
        # semanage exits non-zero when the mapping is already defined.
        self._run(["semanage", "fcontext", "-a", "-t", "ssh_home_t", f"{root}(/.*)?"], check=False)
        self._run(
            ["semanage", "fcontext", "-a", "-t", "httpd_sys_rw_content_t", f"{root}/[^/]+/public_html(/.*)?"],
            check=False,
        )
        self._run(["restorecon", "-Rv", root], check=False)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Persist the configuration (requires root). Without it only a dry-run is performed.",
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        help="Path to the TOML configuration shared with student_provision.py.",
    )
    parser.add_argument(
        "--sshd-config",
        type=pathlib.Path,
        default=DEFAULT_SSHD_CONFIG,
        help="sshd configuration file to manage (default: /etc/ssh/sshd_config).",
    )
    parser.add_argument(
        "--backup-dir",
        type=pathlib.Path,
        help="Directory for configuration backups (default: next to each file).",
    )
    parser.add_argument(
        "--skip-packages",
        action="store_true",
        help="Do not install packages or enable services.",
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
    return parser.parse_args(argv)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, args.log_file, args.log_format)

    if args.apply:
        try:
            ensure_root()
        except PermissionError as exc:
            LOG.error("%s", exc)
            return 1

    config = load_provision_config(args.config)
    writer = ConfigWriter(dry_run=not args.apply, backup_dir=args.backup_dir)
    bootstrap = HostBootstrap(config.accounts, writer, dry_run=not args.apply, sshd_config=args.sshd_config)

    try:
        bootstrap.apply(include_packages=not args.skip_packages)
    except (subprocess.CalledProcessError, FileNotFoundError, ConfigBlockError) as exc:
        LOG.error("Host bootstrap failed: %s", exc)
        return 1

    if args.apply:
        LOG.info("LAMP stack and SFTP access have been configured.")
        print("Next steps:")
        print("  * Run 'mysql_secure_installation' to secure the MariaDB server.")
        print("  * Provision students with 'student_provision.py -f students.csv'.")
    else:
        LOG.info("Dry-run mode. No changes were made.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
