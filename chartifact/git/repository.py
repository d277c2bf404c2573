"""Git operations for the artifact repository, backed by GitPython.

Only what the artifact workflows need: read and write working-tree files,
read a file at a revision, commit everything, list changed paths between two
revisions and push. GitPython failures surface as :class:`GitOperationError`.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import structlog
from git import Actor, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from chartifact.errors import GitOperationError

logger = structlog.get_logger(__name__)

DEFAULT_AUTHOR = Actor("chartifact", "chartifact@localhost")


@dataclass(frozen=True)
class ChangedPath:
    """One entry of ``git diff --name-status``."""

    status: str  # A | M | D | R | C | T
    path: str
    old_path: str = ""


class GitRepository:
    """A local git working tree holding channel artifacts."""

    def __init__(self, path: str | Path, author: Actor | None = None):
        self.path = Path(path)
        self.author = author or DEFAULT_AUTHOR
        try:
            self._repo = Repo(self.path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise GitOperationError(f"Not a git repository: {self.path}") from e
        self._log = logger.bind(repo=str(self.path))

    @classmethod
    def open_or_init(cls, path: str | Path, author: Actor | None = None) -> "GitRepository":
        """Open the repository at ``path``, creating it (and the directory) if needed."""
        target = Path(path)
        if not is_repo(target):
            target.mkdir(parents=True, exist_ok=True)
            Repo.init(target)
            logger.info("repository_initialized", repo=str(target))
        return cls(target, author=author)

    @property
    def repo(self) -> Repo:
        return self._repo

    # ------------------------------------------------------------------
    # Working tree
    # ------------------------------------------------------------------

    def abspath(self, rel: str) -> Path:
        return self.path / PurePosixPath(rel)

    def write_file(self, rel: str, content: str) -> None:
        target = self.abspath(rel)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def remove_path(self, rel: str) -> None:
        target = self.abspath(rel)
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def head_sha(self) -> str | None:
        try:
            return self._repo.head.commit.hexsha
        except ValueError:
            # unborn branch: no commits yet
            return None

    def read_file_at(self, ref: str, rel: str) -> str | None:
        """Content of ``rel`` at ``ref``, or ``None`` when it did not exist there."""
        try:
            return self._repo.git.show(f"{ref}:{rel}")
        except GitCommandError:
            return None

    def list_dir_at(self, ref: str, rel_dir: str) -> list[str]:
        """Names of the entries directly under ``rel_dir`` at ``ref``."""
        args = ["--name-only", ref]
        if rel_dir:
            args.append(f"{rel_dir.rstrip('/')}/")
        try:
            out = self._repo.git.ls_tree(*args)
        except GitCommandError as e:
            raise GitOperationError(f"Cannot list {rel_dir or '.'} at {ref}: {e}") from e
        return sorted(PurePosixPath(line).name for line in out.splitlines() if line)

    def commit(self, message: str) -> str | None:
        """Stage every change and commit it.

        Returns the new commit SHA, or ``None`` when there was nothing to commit.
        """
        try:
            self._repo.git.add("--all")
            staged = self._repo.git.diff("--cached", "--name-only")
            if not staged.strip():
                self._log.debug("nothing_to_commit")
                return None
            commit = self._repo.index.commit(message, author=self.author, committer=self.author)
        except GitCommandError as e:
            raise GitOperationError(f"Commit failed: {e}") from e
        self._log.info("committed", sha=commit.hexsha[:10], files=len(staged.splitlines()))
        return commit.hexsha

    def changed_paths(self, from_ref: str, to_ref: str, under: str = "") -> list[ChangedPath]:
        """Paths changed between two revisions, optionally restricted to ``under``."""
        args = ["--name-status", "--no-color", from_ref, to_ref]
        if under:
            args += ["--", under]
        try:
            out = self._repo.git.diff(*args)
        except GitCommandError as e:
            raise GitOperationError(f"Cannot diff {from_ref}..{to_ref}: {e}") from e
        return parse_name_status(out)

    def push(self, remote: str = "origin", branch: str | None = None) -> None:
        try:
            target = self._repo.remote(remote)
        except ValueError as e:
            raise GitOperationError(f"No remote named '{remote}'") from e
        refspec = branch or self._repo.active_branch.name
        try:
            results = target.push(refspec)
        except GitCommandError as e:
            raise GitOperationError(f"Push to {remote} failed: {e}") from e
        for info in results:
            if info.flags & info.ERROR:
                raise GitOperationError(f"Push to {remote} rejected: {info.summary.strip()}")
        self._log.info("pushed", remote=remote, branch=refspec)


def is_repo(path: str | Path) -> bool:
    try:
        Repo(path)
        return True
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False


def parse_name_status(output: str) -> list[ChangedPath]:
    changes = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        status = parts[0][:1]
        if status in ("R", "C") and len(parts) >= 3:
            changes.append(ChangedPath(status=status, path=parts[2], old_path=parts[1]))
        else:
            changes.append(ChangedPath(status=status, path=parts[1]))
    return changes
