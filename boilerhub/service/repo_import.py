from __future__ import annotations

import asyncio
import os
import shutil
import stat
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

from boilerhub.logging import get_logger, sanitize_error_message
from boilerhub.service.errors import NotFoundError, RepoImportError
from boilerhub.service.fs import PathTraversalError, iter_files, safe_join

logger = get_logger(__name__)

UPLOAD_COMMIT_MESSAGE = "Upload via zip file"
DEFAULT_AUTHOR_NAME = "System"
DEFAULT_AUTHOR_EMAIL = "system@boilerplates.com"

_CHUNK_SIZE = 64 * 1024
_LOG_FIELD_SEP = "\x1f"


@dataclass(frozen=True)
class RepoImportResult:
    path: str
    commit: str
    file_count: int


@dataclass(frozen=True)
class Commit:
    hash: str
    author: str
    email: str
    date: str
    message: str


def _subcommand(args: tuple) -> str:
    """First git argument that is not a global option such as ``-c key=value``."""
    remaining = iter(args)
    for arg in remaining:
        if arg == "-c":
            next(remaining, None)
            continue
        if not arg.startswith("-"):
            return arg
    return args[0] if args else ""


def _git_failure(message: str, stderr: str = "") -> RepoImportError:
    detail = {"stderr": sanitize_error_message(stderr)} if stderr else None
    return RepoImportError(message, status_code=500, error_code="server_error", detail=detail)


def _tracked_path(path: str) -> str:
    parts = PurePosixPath(path.strip().lstrip("/")).parts
    if not parts or any(part in (".", "..") for part in parts) or ".git" in parts:
        raise RepoImportError("invalid file path", detail={"path": path})
    return "/".join(parts)


class RepoImporter:
    """Turns uploaded zip archives into per-boilerplate git repositories.

    Repositories live at ``{root}/repos/{boilerplate_id}``. Git is always run
    as an argv list (never through a shell) with a per-command timeout.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        git_binary: str = "git",
        timeout: float = 30.0,
        max_bytes: int = 50 * 1024 * 1024,
        max_members: int = 5000,
    ) -> None:
        self.repos_root = Path(root) / "repos"
        self.git_binary = git_binary
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.max_members = max_members

    def repo_path(self, boilerplate_id: str) -> Path:
        try:
            return safe_join(self.repos_root, boilerplate_id)
        except PathTraversalError as exc:
            raise RepoImportError("invalid repository id") from exc

    async def import_zip(
        self,
        boilerplate_id: str,
        archive_path: str | Path,
        *,
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
    ) -> RepoImportResult:
        repo_dir = self.repo_path(boilerplate_id)
        created = not repo_dir.exists()
        with tempfile.TemporaryDirectory(prefix="boilerhub_zip_") as tmp:
            staging = Path(tmp)
            await asyncio.to_thread(self._extract, Path(archive_path), staging)
            try:
                await asyncio.to_thread(self._copy_tree, staging, repo_dir)
                commit = await self._commit_all(
                    repo_dir,
                    author_name or DEFAULT_AUTHOR_NAME,
                    author_email or DEFAULT_AUTHOR_EMAIL,
                )
            except (RepoImportError, OSError) as exc:
                if created:
                    shutil.rmtree(repo_dir, ignore_errors=True)
                logger.error(
                    "repo_import_failed",
                    boilerplate_id=boilerplate_id,
                    rolled_back=created,
                    error=str(exc),
                )
                if isinstance(exc, RepoImportError):
                    raise
                raise _git_failure("failed to write repository") from exc
        file_count = sum(1 for _ in iter_files(repo_dir))
        logger.info(
            "repo_imported", boilerplate_id=boilerplate_id, commit=commit, file_count=file_count
        )
        return RepoImportResult(path=str(repo_dir), commit=commit, file_count=file_count)

    def _extract(self, archive_path: Path, dest: Path) -> None:
        if not zipfile.is_zipfile(archive_path):
            raise RepoImportError("archive is not a zip file")
        with zipfile.ZipFile(archive_path) as zf:
            members = zf.infolist()
            if len(members) > self.max_members:
                raise RepoImportError(
                    "archive has too many entries", detail={"max_members": self.max_members}
                )
            if sum(m.file_size for m in members) > self.max_bytes:
                raise RepoImportError(
                    "archive expands beyond the size limit", detail={"max_bytes": self.max_bytes}
                )
            written = 0
            for member in members:
                try:
                    target = safe_join(dest, member.filename)
                except PathTraversalError as exc:
                    raise RepoImportError(
                        "archive entry escapes the repository", detail={"entry": member.filename}
                    ) from exc
                if ".git" in Path(member.filename).parts:
                    logger.warning("repo_import_git_entry_skipped", entry=member.filename)
                    continue
                if stat.S_ISLNK(member.external_attr >> 16):
                    raise RepoImportError(
                        "symbolic links are not allowed", detail={"entry": member.filename}
                    )
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(member) as src, open(target, "wb") as out:
                    while True:
                        chunk = src.read(_CHUNK_SIZE)
                        if not chunk:
                            break
                        written += len(chunk)
                        # Declared sizes can lie; enforce on the real byte count
                        if written > self.max_bytes:
                            raise RepoImportError(
                                "archive expands beyond the size limit",
                                detail={"max_bytes": self.max_bytes},
                            )
                        out.write(chunk)

    @staticmethod
    def _copy_tree(src: Path, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        shutil.copytree(src, dest, dirs_exist_ok=True)

    async def _commit_all(self, repo_dir: Path, author_name: str, author_email: str) -> str:
        if not (repo_dir / ".git").exists():
            await self._git(repo_dir, "init", "--quiet")
        await self._git(repo_dir, "add", "-A")
        await self._git(
            repo_dir,
            "-c",
            f"user.name={author_name}",
            "-c",
            f"user.email={author_email}",
            "-c",
            "commit.gpgsign=false",
            "commit",
            "--quiet",
            "--allow-empty",
            "-m",
            UPLOAD_COMMIT_MESSAGE,
        )
        head = await self._git(repo_dir, "rev-parse", "HEAD")
        return head.decode("utf-8", errors="replace").strip()

    async def archive(self, boilerplate_id: str, ref: str = "HEAD") -> bytes:
        repo_dir = self._existing_repo(boilerplate_id)
        if ref.startswith("-"):
            raise RepoImportError("invalid ref")
        return await self._git(repo_dir, "archive", "--format=zip", ref)

    async def history(self, boilerplate_id: str, limit: int = 20) -> List[Commit]:
        repo_dir = self._existing_repo(boilerplate_id)
        fmt = _LOG_FIELD_SEP.join(["%H", "%an", "%ae", "%aI", "%s"])
        raw = await self._git(repo_dir, "log", f"-n{int(limit)}", f"--pretty=format:{fmt}")
        commits: List[Commit] = []
        for line in raw.decode("utf-8", errors="replace").splitlines():
            parts = line.split(_LOG_FIELD_SEP)
            if len(parts) != 5:
                continue
            commits.append(Commit(*parts))
        return commits

    async def list_files(self, boilerplate_id: str, ref: str = "HEAD") -> List[str]:
        """Paths of every file tracked at ``ref``, sorted."""
        repo_dir = self._existing_repo(boilerplate_id)
        commit = await self._resolve_ref(repo_dir, ref)
        raw = await self._git(repo_dir, "ls-tree", "-r", "-z", "--name-only", commit)
        names = raw.decode("utf-8", errors="replace").split("\0")
        return sorted(name for name in names if name)

    async def read_file(self, boilerplate_id: str, path: str, ref: str = "HEAD") -> bytes:
        repo_dir = self._existing_repo(boilerplate_id)
        clean = _tracked_path(path)
        commit = await self._resolve_ref(repo_dir, ref)
        raw = await self._git(repo_dir, "ls-tree", "-r", "-z", "--name-only", commit, "--", clean)
        if clean not in raw.decode("utf-8", errors="replace").split("\0"):
            raise NotFoundError("file not found", detail={"path": clean, "ref": ref})
        return await self._git(repo_dir, "cat-file", "blob", f"{commit}:{clean}")

    async def _resolve_ref(self, repo_dir: Path, ref: str) -> str:
        if not ref or ref.startswith("-"):
            raise RepoImportError("invalid ref")
        returncode, raw, _ = await self._run_git(
            repo_dir, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"
        )
        if returncode != 0:
            raise NotFoundError("ref not found", detail={"ref": ref})
        return raw.decode("utf-8", errors="replace").strip()

    def remove(self, boilerplate_id: str) -> bool:
        repo_dir = self.repo_path(boilerplate_id)
        if not repo_dir.exists():
            return False
        shutil.rmtree(repo_dir, ignore_errors=True)
        logger.info("repo_removed", boilerplate_id=boilerplate_id)
        return True

    def _existing_repo(self, boilerplate_id: str) -> Path:
        repo_dir = self.repo_path(boilerplate_id)
        if not (repo_dir / ".git").exists():
            raise NotFoundError("repository not found", detail={"boilerplate_id": boilerplate_id})
        return repo_dir

    async def _git(self, cwd: Path, *args: str) -> bytes:
        returncode, stdout, stderr = await self._run_git(cwd, *args)
        if returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            logger.error("git_command_failed", command=_subcommand(args), returncode=returncode)
            raise _git_failure("git command failed", err)
        return stdout

    async def _run_git(self, cwd: Path, *args: str) -> Tuple[int, bytes, bytes]:
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary,
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            logger.error("git_spawn_failed", binary=self.git_binary, error=str(exc))
            raise _git_failure("git is not available") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error("git_timeout", command=_subcommand(args), timeout=self.timeout)
            raise _git_failure(f"git {_subcommand(args)} timed out")
        return proc.returncode, stdout, stderr
