import asyncio

from automode_server.git_commit import commit_all, get_head_hash, has_uncommitted_changes, short_hash
from automode_server.worktree import CommandResult
from fakes import FakeCommandRunner, git_missing


STATUS = ("git", "status", "--porcelain")
ADD = ("git", "add", "-A")
HEAD = ("git", "rev-parse", "HEAD")


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", exit_code=0)


def test_commit_all_stages_commits_and_returns_head() -> None:
    runner = FakeCommandRunner(
        {
            STATUS: _ok(" M src/app.py\n"),
            HEAD: _ok("abcdef0123456789\n"),
        }
    )

    commit_hash = asyncio.run(commit_all(runner, "/wt", 'feat: add "quoted" export'))

    assert commit_hash == "abcdef0123456789"
    argvs = [argv for argv, _ in runner.calls]
    assert argvs == [
        STATUS,
        ADD,
        ("git", "commit", "-m", 'feat: add "quoted" export'),
        HEAD,
    ]
    assert all(cwd == "/wt" for _, cwd in runner.calls)


def test_commit_all_skips_clean_tree() -> None:
    runner = FakeCommandRunner({STATUS: _ok("")})

    assert asyncio.run(commit_all(runner, "/wt", "noop")) is None
    assert [argv for argv, _ in runner.calls] == [STATUS]


def test_commit_all_returns_none_when_commit_fails() -> None:
    runner = FakeCommandRunner(
        {
            STATUS: _ok("?? new.txt\n"),
            ("git", "commit", "-m", "msg"): CommandResult(stdout="", stderr="hook rejected", exit_code=1),
        }
    )

    assert asyncio.run(commit_all(runner, "/wt", "msg")) is None


def test_git_helpers_fail_soft() -> None:
    runner = FakeCommandRunner({STATUS: git_missing(), HEAD: git_missing()})

    assert asyncio.run(has_uncommitted_changes(runner, "/wt")) is False
    assert asyncio.run(get_head_hash(runner, "/wt")) is None


def test_short_hash() -> None:
    assert short_hash("abcdef0123456789") == "abcdef01"
    assert short_hash("abcdef0123456789", 4) == "abcd"
