"""
Pytest configuration and shared fixtures.

Repositories are real git repositories. GitHub URLs are redirected to local
bare repositories with ``url.<base>.insteadOf`` in an isolated global git
config, and a fake ``gh`` on PATH turns ``gh repo clone`` into ``git clone``.
"""

import os
import subprocess
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

import pytest

from omarchy_setup.config_repos import ConfigRepoManager
from omarchy_setup.console import Console

FAKE_GH = """#!/bin/sh
if [ "$1" = "repo" ] && [ "$2" = "clone" ]; then
    exec git clone --quiet "https://github.com/$3.git" "$4"
fi
if [ "$1" = "auth" ] && [ "$2" = "status" ]; then
    exit 0
fi
exit 1
"""


def git(*args: str, cwd: Path) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout


def current_branch(repo: Path) -> str:
    return git("rev-parse", "--abbrev-ref", "HEAD", cwd=repo).strip()


@pytest.fixture
def remotes_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Serve https://github.com/<owner>/<name>.git from a local directory."""
    remotes = tmp_path / "remotes"
    remotes.mkdir()

    gitconfig = tmp_path / "gitconfig"
    gitconfig.write_text(
        "[user]\n"
        "\tname = Test User\n"
        "\temail = test@example.com\n"
        "[init]\n"
        "\tdefaultBranch = main\n"
        "[advice]\n"
        "\tdetachedHead = false\n"
        f'[url "{remotes}/"]\n'
        "\tinsteadOf = https://github.com/\n"
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    gh = bin_dir / "gh"
    gh.write_text(FAKE_GH)
    gh.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ['PATH']}")

    return remotes


@pytest.fixture
def make_remote(tmp_path: Path, remotes_dir: Path) -> Callable[..., Path]:
    """
    Create a bare remote for ``owner/name``.

    The remote has a main branch with a README and one extra commit per
    additional branch, each adding ``<branch>.txt``.
    """

    def _make(full_name: str, branches: Iterable[str] = ()) -> Path:
        seed = tmp_path / "seed" / full_name
        seed.mkdir(parents=True)
        git("init", cwd=seed)
        (seed / "README.md").write_text(f"# {full_name}\n")
        git("add", "README.md", cwd=seed)
        git("commit", "-m", "Initial commit", cwd=seed)
        for branch in branches:
            git("checkout", "-b", branch, "main", cwd=seed)
            (seed / f"{branch}.txt").write_text(f"{branch}\n")
            git("add", f"{branch}.txt", cwd=seed)
            git("commit", "-m", f"Add {branch}", cwd=seed)
        git("checkout", "main", cwd=seed)

        bare = remotes_dir / f"{full_name}.git"
        bare.parent.mkdir(parents=True, exist_ok=True)
        git("clone", "--bare", str(seed), str(bare), cwd=tmp_path)
        return bare

    return _make


@pytest.fixture
def push_commit(tmp_path: Path, remotes_dir: Path) -> Callable[..., None]:
    """Push a commit that writes ``content`` to ``filename`` on a remote's main branch."""

    def _push(full_name: str, filename: str, content: str) -> None:
        work = tmp_path / "pushers" / full_name
        if not work.exists():
            work.parent.mkdir(parents=True, exist_ok=True)
            git("clone", f"https://github.com/{full_name}.git", str(work), cwd=tmp_path)
        git("pull", "--rebase", cwd=work)
        (work / filename).write_text(content)
        git("add", filename, cwd=work)
        git("commit", "-m", f"Update {filename}", cwd=work)
        git("push", "origin", "main", cwd=work)

    return _push


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    path = tmp_path / "config"
    path.mkdir()
    return path


@pytest.fixture
def make_manager(tmp_path: Path, config_dir: Path) -> Callable[..., ConfigRepoManager]:
    def _make(
        repos: Optional[Dict[str, str]] = None,
        pinned: Optional[list] = None,
        timestamp: str = "20260101-120000",
    ) -> ConfigRepoManager:
        return ConfigRepoManager(
            config_dir=str(config_dir),
            log_file=str(tmp_path / "logs" / "setup.log"),
            repos=repos if repos is not None else {},
            pinned=pinned if pinned is not None else [],
            branch_source="owner/repo-a",
            console=Console(use_gum=False),
            timestamp=timestamp,
        )

    return _make
