from __future__ import annotations

import logging

from automode_server.worktree import CommandError, CommandRunner


logger = logging.getLogger("automode.git")


async def has_uncommitted_changes(runner: CommandRunner, work_dir: str) -> bool:
    try:
        result = await runner.run(["git", "status", "--porcelain"], cwd=work_dir)
    except CommandError:
        return False
    return result.ok and bool(result.stdout.strip())


async def commit_all(runner: CommandRunner, work_dir: str, message: str) -> str | None:
    """Stage everything and commit; returns the new HEAD hash or None when nothing was committed."""
    if not await has_uncommitted_changes(runner, work_dir):
        return None

    try:
        staged = await runner.run(["git", "add", "-A"], cwd=work_dir)
        if not staged.ok:
            logger.warning("git add failed in %s: %s", work_dir, staged.stderr.strip())
            return None
        committed = await runner.run(["git", "commit", "-m", message], cwd=work_dir)
        if not committed.ok:
            logger.warning("git commit failed in %s: %s", work_dir, committed.stderr.strip())
            return None
    except CommandError as exc:
        logger.warning("git commit failed in %s: %s", work_dir, exc)
        return None

    return await get_head_hash(runner, work_dir)


async def get_head_hash(runner: CommandRunner, work_dir: str) -> str | None:
    try:
        result = await runner.run(["git", "rev-parse", "HEAD"], cwd=work_dir)
    except CommandError:
        return None
    if not result.ok:
        return None
    return result.stdout.strip() or None


def short_hash(commit_hash: str, length: int = 8) -> str:
    return commit_hash[:length]
