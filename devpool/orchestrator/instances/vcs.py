"""Git workspaces: one checkout per (repo, branch) under the clones directory.

Layout::

    {clones_dir}/{owner}/{name}/{branch}

``owner`` and ``branch`` are percent-encoded (``feature/x`` is stored as
``feature%2Fx``), so every workspace sits exactly three levels below the
clones directory and distinct (repo, branch) pairs never share a directory.
An existing checkout is only reused when its ``origin`` is the repo asked for.
"""

from __future__ import annotations

import shutil
from functools import partial
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, unquote, urlparse

from anyio import to_thread
from loguru import logger

from devpool.orchestrator.instances.process import run_command

NO_OWNER = "_"


class CloneError(RuntimeError):
    """Raised when a workspace could not be cloned or checked out."""


class WorkspaceConflictError(RuntimeError):
    """Raised when the workspace directory holds a checkout of another remote."""


class WorkspaceNotFoundError(LookupError):
    """Raised when no workspace matches a lookup."""


class AmbiguousWorkspaceError(ValueError):
    """Raised when a lookup matches several workspaces."""

    def __init__(self, spec: str, matches: list[Path]) -> None:
        self.spec = spec
        self.matches = matches
        names = ", ".join(describe_workspace(m) for m in matches)
        super().__init__(f"'{spec}' matches several workspaces ({names}); use owner/repo/branch")


class WorkspaceProvider(Protocol):
    async def ensure(self, repo: str, branch: str) -> Path: ...

    async def remove(self, workspace: str | Path) -> None: ...


# -- Naming --------------------------------------------------------------------


def _repo_path(repo: str) -> str:
    if "://" in repo:
        return urlparse(repo).path
    if repo.startswith("git@") and ":" in repo:
        return repo.split(":", 1)[1]
    return repo


def repo_slug(repo: str) -> tuple[str, str]:
    """``owner/name``, a clone URL or a local path -> ``(owner, name)``.

    Nested groups (``group/sub/name``) keep the whole prefix as the owner.
    A bare ``name`` has the owner ``_``.
    """
    parts = [p for p in _repo_path(repo).strip().strip("/").split("/") if p]
    if not parts or not parts[-1].removesuffix(".git"):
        msg = f"Cannot derive a repository name from '{repo}'"
        raise ValueError(msg)
    name = parts[-1].removesuffix(".git")
    owner = "/".join(parts[:-1]) or NO_OWNER
    return owner, name


def branch_dirname(branch: str) -> str:
    return quote(branch, safe="")


def branch_from_dirname(dirname: str) -> str:
    return unquote(dirname)


def workspace_relpath(repo: str, branch: str) -> Path:
    """Workspace location relative to the clones directory."""
    owner, name = repo_slug(repo)
    return Path(quote(owner, safe=""), name, branch_dirname(branch))


def describe_workspace(path: Path) -> str:
    """``owner/name@branch`` for a workspace directory."""
    return f"{unquote(path.parent.parent.name)}/{path.parent.name}@{branch_from_dirname(path.name)}"


def _remote_identity(url: str) -> str:
    """Host and repository path, ignoring scheme, credentials and ``.git``."""
    url = url.strip()
    if "://" in url:
        parsed = urlparse(url)
        host, path = parsed.hostname or "", parsed.path
    elif url.startswith("git@") and ":" in url:
        host, path = url[4:].split(":", 1)
    else:
        host, path = "", url
    return f"{host.lower()}/{path.strip('/').removesuffix('.git')}"


def _is_url(repo: str) -> bool:
    return "://" in repo or repo.startswith("git@") or repo.startswith("/")


# -- Provider ------------------------------------------------------------------


class GitWorkspaceProvider:
    """``WorkspaceProvider`` that clones with the ``git`` CLI."""

    def __init__(
        self,
        clones_dir: str | Path,
        *,
        clone_url_template: str = "https://github.com/{repo}.git",
        git_bin: str = "git",
    ) -> None:
        self._clones_dir = Path(clones_dir)
        self._clone_url_template = clone_url_template
        self._git = git_bin

    @property
    def clones_dir(self) -> Path:
        return self._clones_dir

    def workspace_path(self, repo: str, branch: str) -> Path:
        return self._clones_dir / workspace_relpath(repo, branch)

    def clone_url(self, repo: str) -> str:
        return repo if _is_url(repo) else self._clone_url_template.format(repo=repo)

    async def ensure(self, repo: str, branch: str) -> Path:
        """Return the workspace, cloning it first if needed.

        When the branch does not exist on the remote, the default branch is
        cloned and ``branch`` is created from it.  Raises ``CloneError``, or
        ``WorkspaceConflictError`` when the directory already holds a checkout
        of another remote.
        """
        path = self.workspace_path(repo, branch)
        url = self.clone_url(repo)
        try:
            if (path / ".git").exists():
                await self._check_origin(path, url)
                return path

            path.parent.mkdir(parents=True, exist_ok=True)
            result = await run_command([self._git, "clone", "--branch", branch, url, str(path)])
            if not result.ok and _missing_remote_branch(result.stderr):
                logger.info("Branch {} not on {}; creating it from the default branch", branch, repo)
                await self._discard(path)
                result = await run_command([self._git, "clone", url, str(path)])
                if result.ok:
                    result = await run_command([self._git, "-C", str(path), "checkout", "-b", branch])
        except FileNotFoundError as exc:
            msg = f"git executable is missing ({self._git})"
            raise CloneError(msg) from exc

        if not result.ok:
            await self._discard(path)
            msg = f"Failed to clone {repo}@{branch}: {result.detail()}"
            raise CloneError(msg)

        logger.info("Cloned {}@{} into {}", repo, branch, path)
        return path

    async def _check_origin(self, path: Path, url: str) -> None:
        result = await run_command([self._git, "-C", str(path), "remote", "get-url", "origin"])
        origin = result.stdout.strip() if result.ok else ""
        if not origin or _remote_identity(origin) != _remote_identity(url):
            msg = f"Workspace {path} is a checkout of '{origin or 'unknown origin'}', not {url}"
            raise WorkspaceConflictError(msg)

    async def remove(self, workspace: str | Path) -> None:
        await self._discard(Path(workspace))

    async def _discard(self, path: Path) -> None:
        await to_thread.run_sync(partial(shutil.rmtree, path, ignore_errors=True))


def _missing_remote_branch(stderr: str) -> bool:
    lowered = stderr.lower()
    return "remote branch" in lowered and "not found" in lowered


# -- Lookup --------------------------------------------------------------------


def resolve_workspace(clones_dir: str | Path, spec: str) -> Path:
    """Find a workspace by path, ``owner/repo/branch``, ``repo/branch`` or ``branch``.

    The most specific form that matches anything wins.  Raises
    ``WorkspaceNotFoundError`` or ``AmbiguousWorkspaceError``.
    """
    clones = Path(clones_dir)
    direct = Path(spec).expanduser()
    if direct.is_absolute() and direct.is_dir():
        return direct

    workspaces = sorted(p for p in clones.glob("*/*/*") if p.is_dir()) if clones.is_dir() else []
    by_full: list[Path] = []
    by_repo: list[Path] = []
    by_branch: list[Path] = []
    for path in workspaces:
        owner = unquote(path.parent.parent.name)
        name = path.parent.name
        branch = branch_from_dirname(path.name)
        if spec == f"{owner}/{name}/{branch}":
            by_full.append(path)
        if spec == f"{name}/{branch}":
            by_repo.append(path)
        if spec == branch:
            by_branch.append(path)

    matches = by_full or by_repo or by_branch
    if not matches:
        msg = f"No workspace matches '{spec}' under {clones}"
        raise WorkspaceNotFoundError(msg)
    if len(matches) > 1:
        raise AmbiguousWorkspaceError(spec, matches)
    return matches[0]
