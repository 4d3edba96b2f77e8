"""
Omarchy configuration repository setup.

Clones or updates the omarchy configuration repositories under ~/.config,
optionally switching them to a branch picked by the user.
"""

import argparse
import json
import os
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import keyring
import requests
from keyring.errors import KeyringError
from tqdm import tqdm

from omarchy_setup.console import Console
from omarchy_setup.remotes import matches_remote
from omarchy_setup.shell import (
    SetupCancelled,
    SetupError,
    install_termination_handler,
    run,
)

API_URL = "https://api.github.com"
KEYRING_SERVICE = "omarchy_setup"
KEYRING_USER = "github.com"
PER_PAGE = 100

BACKUP_DIR_NAME = "omarchy-backups"
BRANCH_SOURCE_REPO = "timmo001/omarchy-hypr"

CONFIG_REPOS: Dict[str, str] = {
    "hypr": "timmo001/omarchy-hypr",
    "waybar": "timmo001/omarchy-waybar",
    "ghostty": "timmo001/omarchy-ghostty",
    "uwsm": "timmo001/omarchy-uwsm",
}

REQUIRED_TOOLS = [
    ("gum", "gum is required but not installed. Install with: sudo pacman -S gum"),
    ("gh", "GitHub CLI (gh) is required but not installed. Install with: sudo pacman -S github-cli"),
    ("git", "git is required but not installed. Install with: sudo pacman -S git"),
]

# Repository states after a sync
CLONED = "cloned"
REPLACED = "replaced"
UPDATED = "updated"
SKIPPED = "skipped"
CONFLICTED = "conflicted"
UPDATE_FAILED = "update_failed"
FAILED = "failed"

# Branch states after a sync
CHECKED_OUT = "checked_out"
UNAVAILABLE = "unavailable"
CHECKOUT_FAILED = "checkout_failed"

SYNCED_STATES = (CLONED, REPLACED, UPDATED)


@dataclass(frozen=True)
class RepoSpec:
    """A configuration repository and the branch it should end up on."""

    dir_name: str
    repo: str
    branch: Optional[str] = None


DOTFILES = RepoSpec("dotfiles", "timmo001/dotfiles", "arch-omarchy")


@dataclass
class RepoResult:
    """What happened to one repository during a run."""

    dir_name: str
    repo: str
    status: str
    branch_status: Optional[str] = None
    backup_path: Optional[Path] = None
    detail: str = ""


def default_config_dir() -> Path:
    return Path.home() / ".config"


def default_log_file() -> Path:
    state_home = os.environ.get("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return Path(state_home) / "omarchy-setup" / "setup.log"


class Logger:
    """
    A logger class that handles structured logging in JSON format suitable for ELK stack.

    Tracks counts of what happened to each repository and writes detailed
    entries and a final summary to a log file. Each entry includes a
    timestamp, event type, message, and any additional fields provided.

    Attributes:
        log_file (Path): Path to the log file where entries will be written
        start_time (float): Timestamp when the logger was initialized
        stats (Dict[str, int]): Dictionary tracking counts of various operations
    """

    def __init__(self, log_file: str) -> None:
        self.log_file = Path(log_file)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.start_time = time.time()
        self.stats: Dict[str, int] = {
            "cloned": 0,
            "updated": 0,
            "replaced": 0,
            "backed_up": 0,
            "skipped": 0,
            "conflicts": 0,
            "checked_out": 0,
            "warnings": 0,
            "errors": 0,
        }

    def log(self, event_type: str, message: str, **kwargs: Any) -> None:
        """
        Log an event in JSON format suitable for ELK stack.

        Args:
            event_type: Type of event (detail or summary)
            message: Human readable message
            **kwargs: Additional fields to include in the log
        """
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "message": message,
            **kwargs,
        }
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(log_entry, default=str) + "\n")

    def increment_stat(self, stat: str) -> None:
        """Increment a statistic counter."""
        if stat in self.stats:
            self.stats[stat] += 1

    def log_summary(self, **kwargs: Any) -> None:
        """Log a summary of the setup run."""
        duration = time.time() - self.start_time
        self.log(
            "summary",
            "Omarchy configuration setup completed",
            duration_seconds=duration,
            stats=self.stats,
            **kwargs,
        )


class ConfigRepoManager:
    """
    Sets up the omarchy configuration repositories in a config directory.

    For each repository the manager clones it if it is missing, updates it
    with a rebase if it is a clean copy of the expected remote, leaves it
    alone if it has local changes, and moves anything else aside into a
    timestamped backup before cloning fresh. It then switches the repository
    to the requested branch when the remote has it.

    Only a failed prerequisite check or branch discovery stops the run. Every
    per-repository problem is reported and the next repository is processed.

    Attributes:
        config_dir (Path): Directory the repositories are cloned into
        backup_dir (Path): Directory conflicting directories are moved to
        timestamp (str): Backup suffix, fixed for the whole run
        repos (Dict[str, str]): Directory name to ``owner/name`` for the
            repositories that follow the selected branch
        pinned (List[RepoSpec]): Repositories processed last, on their own branch
        branch_source (str): Repository whose branches are offered to the user
        logger (Logger): Logger instance for tracking operations
        console (Console): Terminal output
        session (requests.Session): Session for GitHub API requests
    """

    def __init__(
        self,
        config_dir: Optional[str] = None,
        log_file: Optional[str] = None,
        token: Optional[str] = None,
        repos: Optional[Dict[str, str]] = None,
        pinned: Optional[List[RepoSpec]] = None,
        branch_source: str = BRANCH_SOURCE_REPO,
        console: Optional[Console] = None,
        timestamp: Optional[str] = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            config_dir: Configuration root (default ~/.config)
            log_file: Path to the JSON log file
            token: GitHub token for API requests (optional)
            repos: Repositories that follow the selected branch
            pinned: Repositories with a fixed branch, processed last
            branch_source: Repository whose branches are offered
            console: Terminal output
            timestamp: Backup suffix (default: now, as YYYYmmdd-HHMMSS)

        Raises:
            SetupError: If the configuration directory cannot be created
        """
        self.config_dir = Path(config_dir).expanduser() if config_dir else default_config_dir()
        self.backup_dir = self.config_dir / BACKUP_DIR_NAME
        self.timestamp = timestamp or datetime.now().strftime("%Y%m%d-%H%M%S")
        self.repos = dict(CONFIG_REPOS if repos is None else repos)
        self.pinned = [DOTFILES] if pinned is None else list(pinned)
        self.branch_source = branch_source
        self.token = token
        self.logger = Logger(str(log_file) if log_file else str(default_log_file()))
        self.console = console or Console()

        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SetupError(
                f"Cannot create directory {self.config_dir}. Please check that you "
                "have write permissions."
            ) from e

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/vnd.github+json"})

    def check_prerequisites(self) -> None:
        """
        Verify that gum, gh and git are installed and gh is logged in.

        Raises:
            SetupError: If a tool is missing or gh is not authenticated
        """
        self.console.progress("Checking prerequisites...")

        for tool, message in REQUIRED_TOOLS:
            if shutil.which(tool) is None:
                self.logger.log("detail", message, action="prerequisites", tool=tool)
                raise SetupError(message)

        if run(["gh", "auth", "status"]).returncode != 0:
            raise SetupError("GitHub CLI is not authenticated. Run: gh auth login")

        self.logger.log("detail", "All prerequisites satisfied", action="prerequisites")
        self.console.info("✓ All prerequisites satisfied")

    def _resolve_token(self) -> Optional[str]:
        if self.token:
            return self.token
        try:
            token = keyring.get_password(KEYRING_SERVICE, KEYRING_USER)
        except KeyringError:
            token = None
        if token:
            return token
        result = run(["gh", "auth", "token"])
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
        return None

    def get_branches(self, repo: str) -> List[str]:
        """
        Fetch the branch names of a repository from the GitHub API.

        Args:
            repo: Repository identifier, ``owner/name``

        Returns:
            Branch names, in the order the API lists them

        Raises:
            SetupCancelled: If the request was interrupted
            SetupError: If authentication or the request fails
        """
        if "Authorization" not in self.session.headers:
            token = self._resolve_token()
            if token:
                self.session.headers["Authorization"] = f"Bearer {token}"

        branches: List[str] = []
        page = 1
        while True:
            try:
                response = self.session.get(
                    f"{API_URL}/repos/{repo}/branches",
                    params={"page": page, "per_page": PER_PAGE},
                    timeout=30,
                )
                response.raise_for_status()
                page_branches = response.json()
            except KeyboardInterrupt as e:
                raise SetupCancelled("Branch discovery was interrupted") from e
            except requests.exceptions.HTTPError as e:
                if response.status_code == 401:
                    raise SetupError(
                        "GitHub authentication failed. Run: gh auth login"
                    ) from e
                if response.status_code == 404:
                    raise SetupError(f"Repository {repo} was not found") from e
                raise SetupError(f"Failed to fetch branches for {repo}: {e}") from e
            except requests.exceptions.RequestException as e:
                raise SetupError(f"Failed to fetch branches for {repo}: {e}") from e
            except ValueError as e:
                raise SetupError(f"Unexpected response listing branches for {repo}") from e

            if not page_branches:
                break
            branches.extend(branch["name"] for branch in page_branches)
            if len(page_branches) < PER_PAGE:
                break
            page += 1
        return branches

    def discover_branches(self) -> List[str]:
        """
        List the branches users can pick from.

        Only the source repository is queried; the other repositories are
        assumed to use the same branch names.

        Raises:
            SetupCancelled: If discovery was interrupted
            SetupError: If no branches could be fetched
        """
        self.console.progress("Discovering available branches...")
        branches = self.get_branches(self.branch_source)
        if not branches:
            raise SetupError(f"Failed to fetch branches from {self.branch_source} repository")
        self.logger.log(
            "detail",
            f"Found {len(branches)} branches on {self.branch_source}",
            action="discover",
            repo=self.branch_source,
            total_branches=len(branches),
        )
        return branches

    def prompt_branch_selection(self, branches: List[str]) -> str:
        """
        Ask the user which branch to set up.

        Raises:
            SetupCancelled: If the user cancelled the picker
            SetupError: If the picker closed without a selection
        """
        self.console.heading("Select your system configuration:")
        selected = self.console.choose(branches, header="Available branches")
        if not selected:
            raise SetupError("No branch selected")
        self.logger.log("detail", f"Selected branch {selected}", action="select", branch=selected)
        return selected

    def backup_if_exists(self, dir_name: str) -> Optional[Path]:
        """
        Move ``<config-dir>/<dir_name>`` into the backup directory.

        The backup is named ``<dir_name>-<timestamp>`` using the run's
        timestamp; a numeric suffix is added if that name is already taken.

        Args:
            dir_name: Directory name relative to the config directory

        Returns:
            The backup path, or None if there was nothing to back up
        """
        target = self.config_dir / dir_name
        if not target.exists() and not target.is_symlink():
            return None

        self.console.progress(f"Backing up existing {dir_name}...")
        backup_path = self.backup_dir / f"{dir_name}-{self.timestamp}"
        counter = 1
        while backup_path.exists():
            backup_path = self.backup_dir / f"{dir_name}-{self.timestamp}-{counter}"
            counter += 1

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(target), str(backup_path))
        except OSError as e:
            raise RuntimeError(f"Failed to back up {dir_name}: {e}") from e
        self.logger.log(
            "detail",
            f"Backed up {dir_name} to {backup_path}",
            action="backup",
            repo_name=dir_name,
            backup_path=str(backup_path),
        )
        self.logger.increment_stat("backed_up")
        self.console.info(f"✓ Backed up to {backup_path}")
        return backup_path

    def _git(self, args: List[str], cwd: Path) -> subprocess.CompletedProcess:
        return run(["git", *args], cwd=cwd)

    def is_expected_repo(self, target: Path, repo: str) -> bool:
        """Return True if ``target`` is a working copy whose origin is ``repo``."""
        if not (target / ".git").exists():
            return False
        # The configured URL, before any insteadOf rewriting
        result = self._git(["config", "--get", "remote.origin.url"], target)
        if result.returncode != 0:
            return False
        return matches_remote(result.stdout.strip(), repo)

    def is_clean(self, target: Path) -> bool:
        """Return True if the working copy has no uncommitted changes."""
        result = self._git(["status", "--porcelain"], target)
        return result.returncode == 0 and not result.stdout.strip()

    def _discard_partial_clone(self, target: Path) -> None:
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)

    def clone_repo(self, spec: RepoSpec, target: Path) -> None:
        """
        Clone a repository into an absent target path.

        A partially written target is removed if the clone fails or is
        interrupted.

        Raises:
            SetupCancelled: If the clone was interrupted
            RuntimeError: If the clone failed
        """
        self.logger.log(
            "detail",
            f"Cloning repository {spec.repo}",
            action="clone",
            repo_name=spec.dir_name,
            repo=spec.repo,
        )
        try:
            result = run(["gh", "repo", "clone", spec.repo, str(target)])
        except SetupCancelled:
            self._discard_partial_clone(target)
            raise
        if result.returncode != 0:
            self._discard_partial_clone(target)
            stderr = result.stderr.strip() or result.stdout.strip()
            raise RuntimeError(f"Failed to clone {spec.repo}: {stderr}")

    def update_repo(self, spec: RepoSpec, target: Path) -> str:
        """
        Pull a working copy with a rebase, unless it has local changes.

        Returns:
            UPDATED, SKIPPED, CONFLICTED or UPDATE_FAILED
        """
        if not self.is_clean(target):
            self.logger.log(
                "detail",
                f"Skipped {spec.dir_name} (uncommitted changes)",
                action="skip",
                repo_name=spec.dir_name,
            )
            self.logger.increment_stat("skipped")
            self.console.warning(f"⚠ Skipped {spec.dir_name} (uncommitted changes)")
            return SKIPPED

        self.logger.log(
            "detail",
            f"Updating repository {spec.dir_name}",
            action="update",
            repo_name=spec.dir_name,
        )
        pull = self._git(["pull", "--rebase"], target)
        clean = self.is_clean(target)

        if pull.returncode == 0 and clean:
            self.logger.increment_stat("updated")
            self.console.info(f"✓ Updated {spec.dir_name}")
            return UPDATED

        stderr = pull.stderr.strip() or pull.stdout.strip()
        if not clean:
            self.logger.log(
                "detail",
                f"{spec.dir_name} has conflicts after pull",
                action="conflict",
                repo_name=spec.dir_name,
                error=stderr,
            )
            self.logger.increment_stat("conflicts")
            self.console.failure(
                f"✗ {spec.dir_name} has conflicts after pull - please resolve manually"
            )
            return CONFLICTED

        self.logger.log(
            "detail",
            f"Failed to update {spec.dir_name}",
            action="error",
            repo_name=spec.dir_name,
            error=stderr,
        )
        self.logger.increment_stat("warnings")
        self.console.failure(f"✗ Failed to update {spec.dir_name}: {stderr}")
        return UPDATE_FAILED

    def remote_has_branch(self, target: Path, branch: str) -> bool:
        """
        Return True if origin has a branch with exactly this name.

        Raises:
            RuntimeError: If the remote could not be queried
        """
        result = self._git(["ls-remote", "--heads", "origin", branch], target)
        if result.returncode != 0:
            stderr = result.stderr.strip() or result.stdout.strip()
            raise RuntimeError(f"Could not list branches of origin: {stderr}")
        wanted = f"refs/heads/{branch}"
        return any(
            line.split("\t", 1)[-1].strip() == wanted
            for line in result.stdout.splitlines()
        )

    def checkout_branch(self, spec: RepoSpec, target: Path, branch: str) -> str:
        """
        Switch a working copy to ``branch`` if origin has it.

        Returns:
            CHECKED_OUT, UNAVAILABLE or CHECKOUT_FAILED
        """
        try:
            available = self.remote_has_branch(target, branch)
        except RuntimeError as e:
            return self._checkout_failed(spec, branch, str(e))

        if not available:
            self.logger.log(
                "detail",
                f"Branch {branch} not available in {spec.dir_name}",
                action="checkout",
                repo_name=spec.dir_name,
                branch=branch,
                available=False,
            )
            self.console.info(
                f"✓ Branch '{branch}' not available in {spec.dir_name}, using default branch"
            )
            return UNAVAILABLE

        for args in (["fetch", "origin", branch], ["checkout", branch]):
            result = self._git(args, target)
            if result.returncode != 0:
                stderr = result.stderr.strip() or result.stdout.strip()
                return self._checkout_failed(spec, branch, f"git {args[0]} failed: {stderr}")

        self.logger.log(
            "detail",
            f"Checked out branch {branch} in {spec.dir_name}",
            action="checkout",
            repo_name=spec.dir_name,
            branch=branch,
            available=True,
        )
        self.logger.increment_stat("checked_out")
        self.console.info(f"✓ Checked out branch: {branch}")
        return CHECKED_OUT

    def _checkout_failed(self, spec: RepoSpec, branch: str, error: str) -> str:
        self.logger.log(
            "detail",
            f"Could not check out {branch} in {spec.dir_name}",
            action="error",
            repo_name=spec.dir_name,
            branch=branch,
            error=error,
        )
        self.logger.increment_stat("warnings")
        self.console.warning(f"⚠ Could not check out branch '{branch}' in {spec.dir_name}: {error}")
        return CHECKOUT_FAILED

    def clone_or_update_repo(self, spec: RepoSpec) -> RepoResult:
        """
        Bring one repository into place and onto its branch.

        Args:
            spec: Repository to process

        Returns:
            What happened to the repository

        Raises:
            SetupCancelled: If a git or gh command was interrupted
            RuntimeError: If cloning failed
        """
        target = self.config_dir / spec.dir_name
        backup_path = None
        self.console.progress(f"Processing {spec.dir_name}...")

        if not target.exists() and not target.is_symlink():
            self.clone_repo(spec, target)
            self.logger.increment_stat("cloned")
            self.console.info(f"✓ Cloned {spec.repo} to {spec.dir_name}")
            status = CLONED
        elif self.is_expected_repo(target, spec.repo):
            status = self.update_repo(spec, target)
        else:
            backup_path = self.backup_if_exists(spec.dir_name)
            self.clone_repo(spec, target)
            self.logger.increment_stat("replaced")
            self.console.info(f"✓ Cloned {spec.repo} to {spec.dir_name} (old version backed up)")
            status = REPLACED

        result = RepoResult(spec.dir_name, spec.repo, status, backup_path=backup_path)
        if spec.branch and status in SYNCED_STATES:
            result.branch_status = self.checkout_branch(spec, target, spec.branch)
        return result

    def sync_all_repos(self, branch: Optional[str]) -> List[RepoResult]:
        """
        Process every repository, then the pinned ones.

        Args:
            branch: Branch selected for the repositories that follow it

        Returns:
            One result per repository, in processing order

        Raises:
            SetupCancelled: If the user interrupted the run
        """
        specs = [RepoSpec(name, repo, branch) for name, repo in self.repos.items()]
        specs.extend(self.pinned)

        results: List[RepoResult] = []
        for spec in tqdm(specs, desc="Syncing repositories", unit="repo"):
            try:
                results.append(self.clone_or_update_repo(spec))
            except RuntimeError as e:
                self.logger.log(
                    "detail",
                    f"Failed to process repository {spec.dir_name}",
                    action="error",
                    repo_name=spec.dir_name,
                    error=str(e),
                )
                self.logger.increment_stat("errors")
                self.console.failure(f"✗ {e}")
                results.append(RepoResult(spec.dir_name, spec.repo, FAILED, detail=str(e)))
        return results

    def print_summary(self, branch: str, results: List[RepoResult]) -> None:
        self.console.banner(
            "Setup Complete!",
            "",
            "Your omarchy configuration repositories have been set up.",
            f"Branch: {branch}",
        )

        for result in results:
            notes = []
            if result.status not in SYNCED_STATES:
                notes.append(result.status.replace("_", " "))
            if result.branch_status == UNAVAILABLE:
                notes.append("branch unavailable")
            elif result.branch_status == CHECKOUT_FAILED:
                notes.append("branch checkout failed")
            if notes:
                self.console.warning(f"⚠ {result.dir_name}: {', '.join(notes)}")

        if self.backup_dir.is_dir():
            self.console.info(f"Backups are stored in: {self.backup_dir}")

    def run_setup(self) -> List[RepoResult]:
        """
        Run the interactive setup from start to finish.

        Returns:
            One result per repository

        Raises:
            SetupCancelled: If the user cancelled
            SetupError: If prerequisites or branch discovery failed
        """
        self.console.clear()
        self.console.banner(
            "Omarchy Configuration Setup",
            "",
            "This script will set up your omarchy configuration repositories.",
        )
        self.logger.log("detail", "Starting omarchy configuration setup", config_dir=str(self.config_dir))

        self.check_prerequisites()
        branches = self.discover_branches()
        selected = self.prompt_branch_selection(branches)
        self.console.info(f"✓ Selected branch: {selected}")

        self.console.heading("Setting up configuration repositories...")
        results = self.sync_all_repos(selected)

        self.print_summary(selected, results)
        self.logger.log_summary(
            branch=selected,
            results={result.dir_name: result.status for result in results},
        )
        return results


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description="Set up the omarchy configuration repositories"
    )
    parser.add_argument(
        "--config-dir",
        help="Directory to set the repositories up in (default: ~/.config)",
        default=None,
    )
    parser.add_argument(
        "--log-file",
        help="Path to log file (default: $XDG_STATE_HOME/omarchy-setup/setup.log)",
        default=None,
    )
    parser.add_argument(
        "--token",
        help=(
            "GitHub personal access token (optional). If not provided, "
            "will try the keyring and then `gh auth token`."
        ),
        default=os.environ.get("GITHUB_TOKEN"),
    )
    parser.add_argument(
        "--store-token",
        help="Store the provided token in the system keyring",
        action="store_true",
    )

    args = parser.parse_args(argv)
    console = Console()
    install_termination_handler()

    try:
        if args.token:
            try:
                stored_token = keyring.get_password(KEYRING_SERVICE, KEYRING_USER)
                if args.store_token or not stored_token:
                    keyring.set_password(KEYRING_SERVICE, KEYRING_USER, args.token)
                    console.info("Token stored in keyring")
            except KeyringError as e:
                console.warning(f"⚠ Could not use the system keyring: {e}")

        manager = ConfigRepoManager(
            config_dir=args.config_dir,
            log_file=args.log_file,
            token=args.token,
            console=console,
        )
        results = manager.run_setup()
    except (SetupCancelled, KeyboardInterrupt):
        console.cancelled()
        sys.exit(130)
    except (RuntimeError, OSError) as e:
        console.error(str(e))
        sys.exit(1)

    if any(result.status == FAILED for result in results):
        sys.exit(1)


if __name__ == "__main__":
    main()
