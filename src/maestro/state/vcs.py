from __future__ import annotations

import logging
import re
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from maestro.errors import VersionControlError

logger = logging.getLogger(__name__)


class VersionControl(ABC):
    """Blocking, single-flight version-control operations used at pipeline boundaries."""

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether operations reach a real repository."""

    @abstractmethod
    def branch(self, name: str) -> str:
        """Create (or reset) and check out a work branch."""

    @abstractmethod
    def commit(self, message: str) -> str | None:
        """Commit all pending changes; return the commit hash or None when clean."""

    @abstractmethod
    def push(self) -> None:
        """Push the current branch."""

    @abstractmethod
    def stash(self, message: str) -> str | None:
        """Record a snapshot of the working tree without changing it."""

    @abstractmethod
    def restore(self, ref: str | None) -> None:
        """Return the working tree to a snapshot recorded by ``stash``."""

    @abstractmethod
    def drop(self, ref: str | None) -> None:
        """Forget a snapshot recorded by ``stash``; unknown refs are ignored."""


class NullVersionControl(VersionControl):
    @property
    def enabled(self) -> bool:
        return False

    def branch(self, name: str) -> str:
        return name

    def commit(self, message: str) -> str | None:
        return None

    def push(self) -> None:
        return None

    def stash(self, message: str) -> str | None:
        return None

    def restore(self, ref: str | None) -> None:
        return None

    def drop(self, ref: str | None) -> None:
        return None


class GitVersionControl(VersionControl):
    def __init__(
        self,
        repo_root: Path,
        *,
        remote: str = "origin",
        lock_timeout_seconds: float = 300.0,
        keep_paths: tuple[str, ...] = (".maestro",),
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.remote = remote
        self.lock_timeout_seconds = lock_timeout_seconds
        # Left alone by snapshots and by the clean step of a restore.
        self.keep_paths = tuple(keep_paths)
        # A second mutating call while one is in flight can abort the first.
        self._lock = threading.Lock()
        self._git_enabled = self._is_git_repo()

    @property
    def enabled(self) -> bool:
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.enabled:
            raise VersionControlError(
                "No git repository found. Version-control operations are disabled."
            )
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise VersionControlError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _exclusive(self, operation: str) -> threading.Lock:
        if not self._lock.acquire(timeout=self.lock_timeout_seconds):
            raise VersionControlError(
                f"Timed out waiting for in-flight version-control operation before {operation}."
            )
        return self._lock

    @staticmethod
    def sanitize_branch_name(name: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9._/-]+", "-", name.strip())
        safe = re.sub(r"/{2,}", "/", safe).strip("/-")
        return safe or "maestro-work"

    def current_branch(self) -> str:
        if not self.enabled:
            return "no-git"
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def head(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def branch(self, name: str) -> str:
        branch_name = self.sanitize_branch_name(name)
        lock = self._exclusive("branch")
        try:
            self._run_git(["checkout", "-B", branch_name])
        finally:
            lock.release()
        logger.info("Checked out work branch %s", branch_name)
        return branch_name

    def commit(self, message: str) -> str | None:
        lock = self._exclusive("commit")
        try:
            self._run_git(["add", "-A"])
            staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
            if staged.returncode == 0:
                logger.info("Nothing to commit for %r", message)
                return None
            self._run_git(["commit", "-m", message])
            commit_hash = self.head()
        finally:
            lock.release()
        logger.info("Committed %s", commit_hash[:10])
        return commit_hash

    def push(self) -> None:
        lock = self._exclusive("push")
        try:
            branch_name = self.current_branch()
            self._run_git(["push", "--set-upstream", self.remote, branch_name])
        finally:
            lock.release()
        logger.info("Pushed %s to %s", branch_name, self.remote)

    def _keep_args(self, flag: str) -> list[str]:
        args: list[str] = []
        for path in self.keep_paths:
            args.extend([flag, path])
        return args

    def stash(self, message: str) -> str | None:
        lock = self._exclusive("stash")
        try:
            # Untracked files only reach the snapshot once they are staged.
            excludes = [f":(exclude){path}" for path in self.keep_paths]
            self._run_git(["add", "-A", "--", ".", *excludes])
            try:
                # `stash create` leaves the working tree untouched.
                snapshot = self._run_git(["stash", "create", message]).stdout.strip()
            finally:
                self._run_git(["reset", "-q"])
            if not snapshot:
                return f"head:{self.head()}"
            self._run_git(["stash", "store", "-m", message, snapshot])
        finally:
            lock.release()
        return snapshot

    def restore(self, ref: str | None) -> None:
        if not ref:
            return
        lock = self._exclusive("restore")
        try:
            if ref.startswith("head:"):
                self._run_git(["reset", "--hard", ref.removeprefix("head:")])
                self._run_git(["clean", "-fd", *self._keep_args("-e")])
            else:
                base = self._run_git(["rev-parse", f"{ref}^1"]).stdout.strip()
                self._run_git(["reset", "--hard", base])
                self._run_git(["clean", "-fd", *self._keep_args("-e")])
                self._run_git(["stash", "apply", ref])
                self._run_git(["reset", "-q"])
        finally:
            lock.release()
        logger.info("Restored working tree to snapshot %s", ref[:16])

    def drop(self, ref: str | None) -> None:
        if not ref or ref.startswith("head:"):
            return
        lock = self._exclusive("drop")
        try:
            entries = self._run_git(["stash", "list", "--format=%H"]).stdout.split()
            if ref not in entries:
                logger.debug("Snapshot %s is no longer in the stash list", ref[:16])
                return
            self._run_git(["stash", "drop", "-q", f"stash@{{{entries.index(ref)}}}"])
        finally:
            lock.release()
        logger.info("Dropped snapshot %s", ref[:16])
