"""Idempotent management of tagged blocks inside line-oriented config files.

A :class:`ConfigBlock` describes a contiguous region of a configuration file
(an ``sshd_config`` ``Match`` section, a single top-level directive, a managed
Apache snippet).  :func:`reconcile_lines` rewrites that region in a list of
lines without touching anything else, and :class:`ConfigWriter` persists the
result with a timestamped backup and an atomic rename.

The transform is a three-state machine:

``OUTSIDE``
    Lines are copied verbatim.  The first line matching the block's start
    pattern is replaced by the desired body (write-on-enter).
``IN_BLOCK``
    Original lines are discarded until a line matching the stop pattern is
    seen.  That line is emitted and the machine moves to ``DONE``.
``DONE``
    Lines are copied verbatim.  Legacy duplicates of the block that appear
    later in the file are discarded as well, so exactly one copy remains.

When the start pattern never matches, the body is appended (or inserted
before the first line matching ``insert_before``).
"""
from __future__ import annotations

import dataclasses
import datetime as _dt
import enum
import fcntl
import logging
import os
import pathlib
import re
import shutil
import tempfile
from typing import Iterable, List, Optional, Sequence, Tuple

LOG = logging.getLogger(__name__)


class ConfigBlockError(RuntimeError):
    """Raised when a configuration file cannot be read or rewritten."""


class ReconcileResult(enum.Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"


class _State(enum.Enum):
    OUTSIDE = "outside"
    IN_BLOCK = "in_block"
    DONE = "done"


@dataclasses.dataclass(frozen=True)
class ConfigBlock:
    """Desired content of a tagged region.

    ``start_pattern`` identifies the first line of the region and
    ``stop_pattern`` the first line after it that belongs to unrelated
    content.  A ``stop_pattern`` of ``None`` means the block runs to the end
    of the file.
    """

    tag: str
    body: Tuple[str, ...]
    start_pattern: str
    stop_pattern: Optional[str] = None
    insert_before: Optional[str] = None

    @classmethod
    def directive(
        cls,
        tag: str,
        line: str,
        pattern: str,
        insert_before: Optional[str] = None,
    ) -> "ConfigBlock":
        """Single-line block: every line after the directive stops it."""

        return cls(
            tag=tag,
            body=(line,),
            start_pattern=pattern,
            stop_pattern="",
            insert_before=insert_before,
        )

    @property
    def start_re(self) -> "re.Pattern[str]":
        return re.compile(self.start_pattern)

    @property
    def stop_re(self) -> Optional["re.Pattern[str]"]:
        if self.stop_pattern is None:
            return None
        return re.compile(self.stop_pattern)


def reconcile_lines(lines: Sequence[str], block: ConfigBlock) -> List[str]:
    """Return a new list of lines with ``block`` present exactly once."""

    start_re = block.start_re
    stop_re = block.stop_re
    result: List[str] = []
    state = _State.OUTSIDE

    for line in lines:
        if state is _State.OUTSIDE:
            if start_re.match(line):
                result.extend(block.body)
                state = _State.IN_BLOCK
            else:
                result.append(line)
        elif state is _State.IN_BLOCK:
            if start_re.match(line):
                continue
            if stop_re is not None and stop_re.match(line):
                result.append(line)
                state = _State.DONE
        else:
            if start_re.match(line):
                state = _State.IN_BLOCK
            else:
                result.append(line)

    if state is _State.OUTSIDE:
        result = _insert_block(result, block)
    return result


def _insert_block(lines: List[str], block: ConfigBlock) -> List[str]:
    if block.insert_before is not None:
        anchor = re.compile(block.insert_before)
        for index, line in enumerate(lines):
            if anchor.match(line):
                return lines[:index] + list(block.body) + lines[index:]

    result = list(lines)
    # Keep appended sections visually separate from the preceding directive.
    if result and result[-1].strip() and len(block.body) > 1:
        result.append("")
    result.extend(block.body)
    return result


class _Line(str):
    """A line read from disk that remembers its original terminator."""

    ending = ""


def _split_lines(text: str) -> List[str]:
    # Only "\n" (optionally preceded by "\r") ends a line; other characters
    # that str.splitlines() treats as breaks stay inside the line.
    lines: List[str] = []
    pieces = text.split("\n")
    for index, piece in enumerate(pieces):
        last = index == len(pieces) - 1
        if last and not piece:
            break
        ending = "" if last else "\n"
        if ending and piece.endswith("\r"):
            piece, ending = piece[:-1], "\r\n"
        line = _Line(piece)
        line.ending = ending
        lines.append(line)
    return lines


def render_blocks(original: str, blocks: Iterable[ConfigBlock]) -> str:
    """Apply every block to ``original`` and return the new file content.

    Lines that survive from ``original`` keep their own terminators; new
    lines use the newline style already present in the file.
    """

    lines = _split_lines(original)
    newline = next((line.ending for line in lines if line.ending), "\n")
    updated: List[str] = lines
    for block in blocks:
        updated = reconcile_lines(updated, block)

    parts = []
    last = len(updated) - 1
    for index, line in enumerate(updated):
        ending = getattr(line, "ending", newline)
        if index < last and not ending:
            ending = newline
        parts.append(str(line) + ending)
    return "".join(parts)


def _backup_path(path: pathlib.Path, backup_dir: Optional[pathlib.Path], timestamp: str) -> pathlib.Path:
    directory = backup_dir if backup_dir is not None else path.parent
    candidate = directory / f"{path.name}.bak-{timestamp}"
    attempt = 1
    # Never overwrite an earlier backup taken within the same second.
    while candidate.exists():
        candidate = directory / f"{path.name}.bak-{timestamp}-{attempt}"
        attempt += 1
    return candidate


class _FileLock:
    """Exclusive advisory lock on a sidecar ``.lock`` file."""

    def __init__(self, path: pathlib.Path) -> None:
        self.lock_path = path.with_name(f".{path.name}.lock")
        self._fh = None

    def __enter__(self) -> "_FileLock":
        self._fh = open(self.lock_path, "a")
        fcntl.flock(self._fh.fileno(), fcntl.LOCK_EX)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._fh is not None:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
            self._fh.close()
            self._fh = None


class ConfigWriter:
    """Writes configuration files safely and idempotently."""

    def __init__(self, dry_run: bool = False, backup_dir: Optional[pathlib.Path] = None) -> None:
        self.dry_run = dry_run
        self.backup_dir = backup_dir

    def write_file(self, path: pathlib.Path, content: str, mode: Optional[int] = None) -> ReconcileResult:
        """Replace ``path`` with ``content`` unless it already matches."""

        if self.dry_run:
            current = path.read_text(encoding="utf-8") if path.exists() else None
            if current == content:
                LOG.info("[dry-run] %s is already up to date", path)
                return ReconcileResult.UNCHANGED
            LOG.info("[dry-run] Would write %s", path)
            LOG.debug("Content for %s:\n%s", path, content)
            return ReconcileResult.CHANGED

        path.parent.mkdir(parents=True, exist_ok=True)
        with _FileLock(path):
            current = path.read_text(encoding="utf-8") if path.exists() else None
            if current == content:
                LOG.debug("%s is already up to date", path)
                return ReconcileResult.UNCHANGED
            self._replace(path, content, mode)
        return ReconcileResult.CHANGED

    def upsert_block(self, path: pathlib.Path, block: ConfigBlock) -> ReconcileResult:
        """Insert or replace ``block`` inside ``path``.

        A missing file is treated as empty.  Returns
        :attr:`ReconcileResult.UNCHANGED` when the rendered content is
        byte-identical to what is on disk, in which case nothing (not even a
        backup) is written.
        """

        return self.upsert_blocks(path, (block,))

    def upsert_blocks(self, path: pathlib.Path, blocks: Iterable[ConfigBlock]) -> ReconcileResult:
        """Apply ``blocks`` in order with a single backup and a single write."""

        blocks = tuple(blocks)
        tags = ", ".join(block.tag for block in blocks)
        if self.dry_run:
            original = _read_text(path)
            updated = render_blocks(original, blocks)
            if updated == original:
                LOG.info("[dry-run] Blocks %s in %s are already up to date", tags, path)
                return ReconcileResult.UNCHANGED
            LOG.info("[dry-run] Would update blocks %s in %s", tags, path)
            LOG.debug("Content for %s:\n%s", path, updated)
            return ReconcileResult.CHANGED

        path.parent.mkdir(parents=True, exist_ok=True)
        with _FileLock(path):
            original = _read_text(path)
            updated = render_blocks(original, blocks)
            if updated == original:
                LOG.debug("Blocks %s in %s are already up to date", tags, path)
                return ReconcileResult.UNCHANGED
            self._replace(path, updated, None)
        LOG.info("Updated blocks %s in %s", tags, path)
        return ReconcileResult.CHANGED

    def _replace(self, path: pathlib.Path, content: str, mode: Optional[int]) -> None:
        timestamp = _dt.datetime.now().strftime("%Y%m%d%H%M%S")
        existing_mode: Optional[int] = None
        try:
            if path.exists():
                existing_mode = path.stat().st_mode & 0o7777
                backup = _backup_path(path, self.backup_dir, timestamp)
                backup.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, backup)
                LOG.info("Created backup %s", backup)

            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
                    fh.write(content)
                    fh.flush()
                    os.fsync(fh.fileno())
                final_mode = mode if mode is not None else existing_mode
                if final_mode is None:
                    final_mode = 0o644
                os.chmod(tmp_name, final_mode)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise ConfigBlockError(f"Failed to rewrite {path}: {exc}") from exc
        LOG.info("Wrote %s", path)


def _read_text(path: pathlib.Path) -> str:
    try:
        with open(path, encoding="utf-8", newline="") as fh:
            return fh.read()
    except FileNotFoundError:
        return ""
    except OSError as exc:
        raise ConfigBlockError(f"Failed to read {path}: {exc}") from exc


def upsert_block(
    path: pathlib.Path,
    block: ConfigBlock,
    backup_dir: Optional[pathlib.Path] = None,
    dry_run: bool = False,
) -> ReconcileResult:
    """Convenience wrapper around :meth:`ConfigWriter.upsert_block`."""

    return ConfigWriter(dry_run=dry_run, backup_dir=backup_dir).upsert_block(pathlib.Path(path), block)
