from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


logger = logging.getLogger("automode.worktree")


class CommandError(Exception):
    pass


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    async def run(self, argv: list[str], cwd: str) -> CommandResult:
        ...


class SubprocessCommandRunner:
    def __init__(self, timeout_seconds: float = 120.0) -> None:
        self._timeout_seconds = timeout_seconds

    async def run(self, argv: list[str], cwd: str) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CommandError(f"cannot run {argv[0]} in {cwd}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise CommandError(f"{' '.join(argv)} timed out after {self._timeout_seconds}s") from exc

        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode if process.returncode is not None else -1,
        )


@dataclass
class WorktreeRecord:
    path: str
    branch: str | None = None
    head: str | None = None
    detached: bool = False
    bare: bool = False


@dataclass
class WorkDirResult:
    work_dir: str
    worktree_path: str | None = None


def parse_worktree_list(output: str) -> list[WorktreeRecord]:
    """Parse ``git worktree list --porcelain`` into one record per worktree."""
    records: list[WorktreeRecord] = []
    current: WorktreeRecord | None = None
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            if current is not None:
                records.append(current)
            current = None
            continue

        if line.startswith("worktree "):
            if current is not None:
                records.append(current)
            current = WorktreeRecord(path=line[len("worktree "):].strip())
        elif current is None:
            continue
        elif line.startswith("branch "):
            current.branch = _strip_heads_prefix(line[len("branch "):].strip())
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):].strip()
        elif line == "detached":
            current.detached = True
        elif line == "bare":
            current.bare = True

    if current is not None:
        records.append(current)
    return records


class WorktreeResolver:
    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def resolve_work_dir(
        self,
        project_path: str,
        branch_name: str | None,
        use_worktrees: bool,
    ) -> WorkDirResult:
        project_root = _normalize(project_path)
        if not use_worktrees or not branch_name:
            return WorkDirResult(work_dir=project_root)

        worktree_path = await self.find_worktree_for_branch(project_root, branch_name)
        if worktree_path is None:
            logger.warning(
                "no worktree for branch %s, running in project root",
                branch_name,
                extra={"extra_fields": {"project_path": project_root, "branch_name": branch_name}},
            )
            return WorkDirResult(work_dir=project_root)
        return WorkDirResult(work_dir=worktree_path, worktree_path=worktree_path)

    async def find_worktree_for_branch(self, project_path: str, branch_name: str) -> str | None:
        try:
            result = await self._runner.run(["git", "worktree", "list", "--porcelain"], cwd=project_path)
        except (CommandError, OSError) as exc:
            logger.warning("git worktree list failed: %s", exc)
            return None
        if not result.ok:
            logger.warning("git worktree list exited with %s: %s", result.exit_code, result.stderr.strip())
            return None

        wanted = _strip_heads_prefix(branch_name)
        for record in parse_worktree_list(result.stdout):
            if record.branch == wanted:
                return _resolve_against(project_path, record.path)
        return None

    async def is_valid_worktree(self, path: str) -> bool:
        try:
            result = await self._runner.run(["git", "rev-parse", "--is-inside-work-tree"], cwd=path)
        except (CommandError, OSError):
            return False
        return result.ok and result.stdout.strip() == "true"

    async def get_worktree_branch(self, path: str) -> str | None:
        try:
            result = await self._runner.run(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=path)
        except (CommandError, OSError):
            return None
        if not result.ok:
            return None
        branch = result.stdout.strip()
        return branch or None


def _strip_heads_prefix(ref: str) -> str:
    prefix = "refs/heads/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref


def _normalize(path: str) -> str:
    return os.path.normpath(os.path.abspath(path))


def _resolve_against(base: str, path: str) -> str:
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = Path(base) / candidate
    return _normalize(str(candidate))
