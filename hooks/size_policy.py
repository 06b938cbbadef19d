"""Blob size policy shared by the server-side size hooks.

Resolves the commits a ref update introduces, walks every tree reachable from
them and flags blobs larger than the configured limit.  The hook scripts in
this directory are thin wrappers around :func:`main`.
"""

from __future__ import annotations

import argparse
import enum
import itertools
import logging
import os
import sys
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import TextIO

import pygit2
from pygit2.enums import ObjectType, SortMode

DEFAULT_MAX_OBJECT_SIZE = 25 * 1024 * 1024  # 25 MiB
MAX_OBJECT_SIZE_VAR = "MAX_OBJECT_SIZE"
ZERO_COMMIT = "0" * 40

DEFAULT_DESCRIPTION = "Reject oversized blobs in the commits a ref update introduces."

EXIT_OK = 0
EXIT_VIOLATION = 1
EXIT_ERROR = 2

logger = logging.getLogger("size_policy")


# ── errors ───────────────────────────────────────────────────────────


class SizeCheckError(Exception):
    """Base class for errors that abort a size check run."""


class ConfigError(SizeCheckError):
    """The size limit override is not a positive integer."""


class RepositoryError(SizeCheckError):
    """The repository could not be opened."""


class ResolutionError(SizeCheckError):
    """A revision does not name a commit in the repository."""


class ObjectLoadError(SizeCheckError):
    """A tree entry points at an object missing from the store."""


class InputError(SizeCheckError):
    """A ref update line read from the hook's stdin is malformed."""


# ── data ─────────────────────────────────────────────────────────────


class PolicyMode(enum.Enum):
    REPORT = "report"  # record every violation, fail at the end
    FAIL_FAST = "fail-fast"  # stop at the first violation
    LOG_ONLY = "log-only"  # print violations, never fail


class EntryKind(enum.Enum):
    BLOB = "blob"
    TREE = "tree"
    OTHER = "other"


@dataclass(frozen=True)
class HookConfig:
    """Settings for one run, resolved once and passed down explicitly."""

    limit_bytes: int = DEFAULT_MAX_OBJECT_SIZE
    mode: PolicyMode = PolicyMode.REPORT
    verbose: bool = False
    null_revision: str = ZERO_COMMIT


@dataclass(frozen=True)
class RevisionRange:
    """A single ref update as git hands it to the hook."""

    old_id: str
    new_id: str
    ref_name: str


@dataclass(frozen=True)
class TreeEntry:
    name: str
    path: str
    kind: EntryKind
    object_id: str
    size_bytes: int = 0


@dataclass(frozen=True)
class Violation:
    entry_name: str
    ref_name: str
    size_bytes: int
    limit_bytes: int

    def __str__(self) -> str:
        return (
            f"{self.entry_name} in {self.ref_name} has size {self.size_bytes}, "
            f"bigger than {self.limit_bytes}"
        )


# ── configuration ────────────────────────────────────────────────────


def parse_limit(value: str) -> int:
    """Parse a byte limit, raising ConfigError unless it is a positive integer."""
    text = value.strip()
    if not (text.isascii() and text.isdigit()) or int(text) == 0:
        raise ConfigError(f"{MAX_OBJECT_SIZE_VAR} must be a positive integer, got {value!r}")
    return int(text)


def load_config(
    environ: Mapping[str, str] | None = None,
    *,
    mode: PolicyMode = PolicyMode.REPORT,
    verbose: bool = False,
) -> HookConfig:
    """Build the run configuration, reading the size limit override from *environ*.

    A malformed override is not fatal: the default limit applies and a warning
    is logged.
    """
    if environ is None:
        environ = os.environ
    limit = DEFAULT_MAX_OBJECT_SIZE
    raw = environ.get(MAX_OBJECT_SIZE_VAR)
    if raw is not None:
        try:
            limit = parse_limit(raw)
        except ConfigError as exc:
            logger.warning("%s; using default of %d bytes", exc, DEFAULT_MAX_OBJECT_SIZE)
    return HookConfig(limit_bytes=limit, mode=mode, verbose=verbose)


# ── repository access ────────────────────────────────────────────────


def open_repository(path: str) -> pygit2.Repository:
    logger.debug("opening repository at %s", path)
    try:
        return pygit2.Repository(path)
    except (KeyError, ValueError, pygit2.GitError) as exc:
        raise RepositoryError(f"cannot open repository at {path}: {exc}") from exc


def _peel_commit(repo: pygit2.Repository, rev: str) -> pygit2.Commit:
    try:
        return repo.revparse_single(rev).peel(pygit2.Commit)
    except (KeyError, ValueError, pygit2.GitError) as exc:
        raise ResolutionError(f"{rev} does not resolve to a commit") from exc


def resolve_commits(
    repo: pygit2.Repository,
    old_id: str,
    new_id: str,
    *,
    null_revision: str = ZERO_COMMIT,
) -> list[pygit2.Commit]:
    """Return the commits introduced by moving a ref from *old_id* to *new_id*.

    Deleting the ref introduces nothing; creating it introduces the whole
    ancestry of *new_id*.  Otherwise this is ``old_id..new_id``.  Commits are
    ordered topologically, oldest first.
    """
    if new_id == null_revision:
        return []
    new_commit = _peel_commit(repo, new_id)
    old_commit = None if old_id == null_revision else _peel_commit(repo, old_id)

    walker = repo.walk(new_commit.id, SortMode.TOPOLOGICAL | SortMode.REVERSE)
    if old_commit is not None:
        walker.hide(old_commit.id)
    return list(walker)


# ── tree walk ────────────────────────────────────────────────────────


def _load(repo: pygit2.Repository, object_id: pygit2.Oid, path: str, expected: type) -> pygit2.Object:
    try:
        obj = repo[object_id]
    except (KeyError, ValueError, pygit2.GitError) as exc:
        raise ObjectLoadError(f"cannot load {path} ({object_id})") from exc
    if not isinstance(obj, expected):
        raise ObjectLoadError(f"{path} ({object_id}) is not a {expected.__name__.lower()}")
    return obj


def _blob_size(repo: pygit2.Repository, object_id: pygit2.Oid, path: str) -> int:
    # header only; the content is never needed
    try:
        kind, size = repo.odb.read_header(object_id)
    except (KeyError, ValueError, pygit2.GitError) as exc:
        raise ObjectLoadError(f"cannot load {path} ({object_id})") from exc
    if kind != ObjectType.BLOB:
        raise ObjectLoadError(f"{path} ({object_id}) is not a blob")
    return size


def walk_tree(repo: pygit2.Repository, commit: pygit2.Commit) -> Iterator[TreeEntry]:
    """Yield every entry under *commit*'s root tree, pre-order, depth-first.

    Siblings come out in the tree's stored order.  Blob sizes come from the
    object header; gitlinks are reported as ``OTHER`` and never looked up.
    """
    root = _load(repo, commit.tree_id, f"<root tree of {commit.id}>", pygit2.Tree)
    stack: list[tuple[Iterator[pygit2.Object], str]] = [(iter(root), "")]
    while stack:
        children, prefix = stack[-1]
        child = next(children, None)
        if child is None:
            stack.pop()
            continue

        path = prefix + child.name
        if child.type == ObjectType.TREE:
            subtree = _load(repo, child.id, path, pygit2.Tree)
            yield TreeEntry(child.name, path, EntryKind.TREE, str(child.id))
            stack.append((iter(subtree), path + "/"))
        elif child.type == ObjectType.BLOB:
            size = _blob_size(repo, child.id, path)
            yield TreeEntry(child.name, path, EntryKind.BLOB, str(child.id), size)
        else:
            yield TreeEntry(child.name, path, EntryKind.OTHER, str(child.id))


def iter_blobs(repo: pygit2.Repository, commits: Iterable[pygit2.Commit]) -> Iterator[TreeEntry]:
    for commit in commits:
        logger.debug("walking commit %s", commit.id)
        for entry in walk_tree(repo, commit):
            if entry.kind is EntryKind.BLOB:
                yield entry


# ── policy ───────────────────────────────────────────────────────────


def exceeds_limit(entry: TreeEntry, limit_bytes: int) -> bool:
    return entry.kind is EntryKind.BLOB and entry.size_bytes > limit_bytes


def find_violations(
    repo: pygit2.Repository,
    update: RevisionRange,
    config: HookConfig,
    reporter: Reporter | None = None,
) -> Iterator[Violation]:
    """Lazily yield a Violation for every oversized blob *update* introduces."""
    logger.debug("checking %s %s..%s", update.ref_name, update.old_id, update.new_id)
    commits = resolve_commits(repo, update.old_id, update.new_id, null_revision=config.null_revision)
    blobs = iter_blobs(repo, commits)
    if config.verbose and reporter is not None:
        blobs = reporter.trace(blobs)
    for entry in blobs:
        if exceeds_limit(entry, config.limit_bytes):
            yield Violation(entry.name, update.ref_name, entry.size_bytes, config.limit_bytes)


def check_updates(
    repo: pygit2.Repository,
    updates: Iterable[RevisionRange],
    config: HookConfig,
    reporter: Reporter | None = None,
) -> list[Violation]:
    """Evaluate *updates* in order and return the violations found.

    In fail-fast mode the walk stops at the first violation.
    """
    violations: Iterator[Violation] = itertools.chain.from_iterable(
        find_violations(repo, update, config, reporter) for update in updates
    )
    if config.mode is PolicyMode.FAIL_FAST:
        violations = itertools.islice(violations, 1)
    return list(violations)


# ── reporting ────────────────────────────────────────────────────────


class Reporter:
    """Writes the human-readable report; stdout unless given another stream."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream

    def _emit(self, line: str) -> None:
        """Write *line*, passing undecodable path bytes through unchanged.

        Git tree names are arbitrary bytes; pygit2 hands non-UTF-8 names back
        surrogate-escaped, which a text stream refuses to encode.
        """
        stream = sys.stdout if self.stream is None else self.stream
        buffer = getattr(stream, "buffer", None)
        if buffer is None:
            stream.write(line + "\n")
            return
        stream.flush()
        buffer.write((line + "\n").encode("utf-8", "surrogateescape"))
        buffer.flush()

    def trace(self, entries: Iterable[TreeEntry]) -> Iterator[TreeEntry]:
        for entry in entries:
            self._emit(f"{entry.size_bytes} {entry.name}")
            yield entry

    def report(self, violations: Iterable[Violation]) -> None:
        for violation in violations:
            self._emit(str(violation))

    @staticmethod
    def exit_code(violations: Sequence[Violation], mode: PolicyMode) -> int:
        if violations and mode is not PolicyMode.LOG_ONLY:
            return EXIT_VIOLATION
        return EXIT_OK


# ── CLI ──────────────────────────────────────────────────────────────


def parse_updates(lines: Iterable[str]) -> list[RevisionRange]:
    """Parse ``<old> <new> <ref>`` lines as git feeds them to pre/post-receive."""
    updates: list[RevisionRange] = []
    for lineno, line in enumerate(lines, 1):
        if not line.strip():
            continue
        parts = line.split()
        if len(parts) != 3:
            raise InputError(f"line {lineno}: expected '<old> <new> <ref>', got {line.strip()!r}")
        updates.append(RevisionRange(*parts))
    return updates


def build_parser(
    prog: str | None = None,
    *,
    description: str = DEFAULT_DESCRIPTION,
    read_stdin: bool = False,
    default_mode: PolicyMode = PolicyMode.REPORT,
) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=prog, description=description)
    p.add_argument(
        "--git-dir",
        default=os.environ.get("GIT_DIR", "."),
        help="Repository to inspect (default: $GIT_DIR, else the current directory).",
    )
    modes = p.add_mutually_exclusive_group()
    modes.add_argument(
        "--fail-fast", dest="mode", action="store_const", const=PolicyMode.FAIL_FAST,
        help="Stop at the first oversized blob.",
    )
    modes.add_argument(
        "--report", dest="mode", action="store_const", const=PolicyMode.REPORT,
        help="Report every oversized blob, then fail if there were any.",
    )
    modes.add_argument(
        "--log-only", dest="mode", action="store_const", const=PolicyMode.LOG_ONLY,
        help="Report oversized blobs but never fail.",
    )
    p.set_defaults(mode=default_mode)
    p.add_argument("--verbose", action="store_true", help="Print '<size> <name>' for every blob visited.")
    p.add_argument("--debug", action="store_true", help="Log debug output to stderr.")
    if not read_stdin:
        p.add_argument("oldrev", help="Previous value of the ref (all zeros on creation).")
        p.add_argument("newrev", help="New value of the ref (all zeros on deletion).")
        p.add_argument("refname", help="Ref being updated, e.g. refs/heads/main.")
    return p


def main(
    argv: Sequence[str] | None = None,
    *,
    prog: str | None = None,
    description: str = DEFAULT_DESCRIPTION,
    read_stdin: bool = False,
    default_mode: PolicyMode = PolicyMode.REPORT,
) -> int:
    parser = build_parser(prog, description=description, read_stdin=read_stdin, default_mode=default_mode)
    args = parser.parse_args(argv)
    name = prog or os.path.basename(sys.argv[0])
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format=f"{name}: %(levelname)s: %(message)s",
    )

    config = load_config(mode=args.mode, verbose=args.verbose)
    reporter = Reporter()
    try:
        if read_stdin:
            updates = parse_updates(sys.stdin)
        else:
            updates = [RevisionRange(args.oldrev, args.newrev, args.refname)]
        # deletions introduce nothing, so they never need the repository
        pending: list[RevisionRange] = []
        for update in updates:
            if update.new_id == config.null_revision:
                logger.debug("skipping deletion of %s", update.ref_name)
            else:
                pending.append(update)
        violations: list[Violation] = []
        if pending:
            repo = open_repository(args.git_dir)
            violations = check_updates(repo, pending, config, reporter)
    except SizeCheckError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    reporter.report(violations)
    return reporter.exit_code(violations, config.mode)


if __name__ == "__main__":
    raise SystemExit(main())
