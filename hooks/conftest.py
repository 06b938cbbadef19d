"""Shared fixtures: throwaway bare repositories built with pygit2."""

from pathlib import Path

import pygit2
import pytest
from pygit2.enums import FileMode, ObjectType


class RepoBuilder:
    """Writes commits straight into a bare repository, no working tree needed.

    File contents are bytes; a str value is taken as a commit id and stored
    as a gitlink (submodule) entry.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.repo = pygit2.init_repository(str(path), bare=True)
        self._clock = 1_700_000_000

    def commit(
        self,
        files: dict[str, bytes | str],
        parents: list[str] | None = None,
        ref: str | None = None,
        message: str = "commit",
    ) -> str:
        return self.commit_tree(self._write_tree(files), parents, ref, message)

    def commit_tree(
        self,
        tree_id: pygit2.Oid,
        parents: list[str] | None = None,
        ref: str | None = None,
        message: str = "commit",
    ) -> str:
        self._clock += 60
        sig = pygit2.Signature("Test", "test@example.com", self._clock, 0)
        oid = self.repo.create_commit(ref, sig, sig, message, tree_id, parents or [])
        return str(oid)

    def write_raw_tree(self, entries: list[tuple[bytes, bytes]]) -> pygit2.Oid:
        """Write a tree of (raw name, blob content) pairs, bypassing str names.

        Git allows any bytes in a name; TreeBuilder only takes str.
        """
        body = b"".join(
            b"100644 " + name + b"\x00" + self.repo.create_blob(content).raw
            for name, content in sorted(entries)
        )
        return self.repo.odb.write(ObjectType.TREE, body)

    def _write_tree(self, files: dict[str, bytes | str]) -> pygit2.Oid:
        builder = self.repo.TreeBuilder()
        subdirs: dict[str, dict[str, bytes | str]] = {}
        for path, content in files.items():
            head, _, rest = path.partition("/")
            if rest:
                subdirs.setdefault(head, {})[rest] = content
            elif isinstance(content, str):
                builder.insert(head, pygit2.Oid(hex=content), FileMode.COMMIT)
            else:
                builder.insert(head, self.repo.create_blob(content), FileMode.BLOB)
        for name, subfiles in subdirs.items():
            builder.insert(name, self._write_tree(subfiles), FileMode.TREE)
        return builder.write()

    def drop_object(self, content: bytes) -> str:
        """Delete the loose blob for *content* from the object store."""
        return self.drop_oid(str(pygit2.hash(content)))

    def drop_oid(self, oid: str) -> str:
        (Path(self.repo.path) / "objects" / oid[:2] / oid[2:]).unlink()
        return oid

    def reopen(self) -> pygit2.Repository:
        return pygit2.Repository(str(self.path))


@pytest.fixture()
def repo(tmp_path: Path) -> RepoBuilder:
    return RepoBuilder(tmp_path / "repo.git")
