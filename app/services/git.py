"""Git service for repository workspaces."""

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

PR_URL_PATTERNS = [
    re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/\d+"),
    re.compile(r"PR URL:\s*(https://\S+)", re.IGNORECASE),
    re.compile(r"Pull Request:\s*(https://\S+)", re.IGNORECASE),
]
MAX_DIFF_CHARS = 5000


class GitError(Exception):
    """Raised when git operations fail."""

    pass


@dataclass
class RepoInfo:
    """A prepared local working copy."""

    path: str
    url: str
    branch: str


@dataclass
class WorkspaceChanges:
    """Uncommitted changes in a workspace."""

    diff: str = ""
    files: list[str] = field(default_factory=list)


def parse_repo_identifier(repo: str) -> tuple[str, str] | None:
    """Split ``owner/repo`` into its two segments.

    Returns:
        (owner, name), or None unless there are exactly two non-empty segments
    """
    parts = repo.split("/")
    if len(parts) != 2 or not all(part.strip() for part in parts):
        return None
    return parts[0].strip(), parts[1].strip()


def task_branch_name(task_id: str) -> str:
    """Deterministic branch name for a task."""
    short = re.sub(r"[^A-Za-z0-9]", "", task_id)[:8] or "task"
    return f"task/{short.lower()}"


def extract_pr_url(output: str) -> str | None:
    """Find a pull request URL in free text."""
    for pattern in PR_URL_PATTERNS:
        match = pattern.search(output)
        if match:
            return match.group(1) if pattern.groups else match.group(0)
    return None


class RepositoryManager:
    """Clones repositories into ``<repos_dir>/<owner>/<repo>`` and manages task branches."""

    def __init__(
        self,
        repos_dir: str | Path,
        github_token: str | None = None,
        remote_base: str = "https://github.com",
        clone_depth: int = 1,
        clone_timeout: int = 300,
        pull_timeout: int = 120,
    ):
        self.repos_dir = Path(repos_dir)
        self.github_token = github_token
        self.remote_base = remote_base.rstrip("/")
        self.clone_depth = clone_depth
        self.clone_timeout = clone_timeout
        self.pull_timeout = pull_timeout

    def _redact(self, text: str) -> str:
        if self.github_token:
            return text.replace(self.github_token, "***")
        return text

    def _clone_url(self, owner: str, name: str) -> str:
        url = f"{self.remote_base}/{owner}/{name}.git"
        if self.github_token and url.startswith("https://"):
            return url.replace(
                "https://", f"https://x-access-token:{self.github_token}@", 1
            )
        return url

    def _run_git(
        self,
        args: list[str],
        cwd: str | Path | None = None,
        timeout: int | None = 60,
    ) -> subprocess.CompletedProcess:
        """Run a git command, raising GitError with redacted output on failure."""
        try:
            return subprocess.run(
                ["git", *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                check=True,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            message = (e.stderr or e.stdout or str(e)).strip()
            raise GitError(f"git {args[0]} failed: {self._redact(message)}") from e
        except subprocess.TimeoutExpired as e:
            raise GitError(f"git {args[0]} timed out after {timeout}s") from e
        except OSError as e:
            raise GitError(f"git {args[0]} could not run: {e}") from e

    def get_repo(self, repo: str) -> RepoInfo | None:
        """Clone or update a repository.

        Args:
            repo: Repository in ``owner/repo`` form

        Returns:
            RepoInfo for the local working copy, or None if the identifier is
            invalid or the clone failed
        """
        parsed = parse_repo_identifier(repo)
        if parsed is None:
            logger.error(f"Invalid repository identifier: {repo!r}")
            return None

        owner, name = parsed
        repo_path = self.repos_dir / owner / name
        clone_url = self._clone_url(owner, name)
        public_url = f"{self.remote_base}/{owner}/{name}.git"

        if (repo_path / ".git").exists():
            logger.info(f"Updating existing checkout at {repo_path}")
            self._update(repo_path)
        else:
            if repo_path.exists():
                logger.warning(f"Removing leftover directory without a checkout at {repo_path}")
                shutil.rmtree(repo_path)
            logger.info(f"Cloning {public_url} into {repo_path}")
            repo_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._run_git(
                    [
                        "clone",
                        "--depth",
                        str(self.clone_depth),
                        clone_url,
                        str(repo_path),
                    ],
                    timeout=self.clone_timeout,
                )
            except GitError as e:
                logger.error(f"Failed to clone {public_url}: {e}")
                shutil.rmtree(repo_path, ignore_errors=True)
                return None

        return RepoInfo(
            path=str(repo_path),
            url=public_url,
            branch=self.current_branch(repo_path),
        )

    def _update(self, repo_path: Path) -> None:
        """Return to the default branch and fast-forward it. Failures are logged only."""
        default_branch = self.default_branch(repo_path)
        try:
            if default_branch:
                self._run_git(["checkout", default_branch], cwd=repo_path)
            self._run_git(["pull", "--ff-only"], cwd=repo_path, timeout=self.pull_timeout)
            logger.info(f"Pulled latest changes in {repo_path}")
        except GitError as e:
            logger.warning(f"Could not update {repo_path}, using existing checkout: {e}")

    def default_branch(self, repo_path: str | Path) -> str | None:
        try:
            result = self._run_git(
                ["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], cwd=repo_path
            )
        except GitError:
            return None
        return result.stdout.strip().removeprefix("origin/") or None

    def current_branch(self, repo_path: str | Path) -> str:
        try:
            result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_path)
        except GitError:
            return ""
        return result.stdout.strip()

    def create_task_branch(self, repo_path: str | Path, task_id: str) -> str:
        """Check out the task's branch, creating it from HEAD if needed.

        Returns:
            The branch name

        Raises:
            GitError: If the checkout fails
        """
        branch = task_branch_name(task_id)
        exists = (
            subprocess.run(
                ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
                cwd=repo_path,
                capture_output=True,
                text=True,
            ).returncode
            == 0
        )

        if exists:
            self._run_git(["checkout", branch], cwd=repo_path)
            logger.info(f"Checked out existing branch {branch}")
        else:
            self._run_git(["checkout", "-b", branch], cwd=repo_path)
            logger.info(f"Created branch {branch}")
        return branch

    def capture_changes(
        self, repo_path: str | Path, max_diff_chars: int = MAX_DIFF_CHARS
    ) -> WorkspaceChanges:
        """Collect modified files and a bounded diff. Never raises."""
        try:
            status = self._run_git(["status", "--porcelain"], cwd=repo_path, timeout=10)
        except GitError as e:
            logger.warning(f"Could not capture git changes: {e}")
            return WorkspaceChanges()

        files = [line[3:].strip() for line in status.stdout.splitlines() if line.strip()]

        diff = ""
        try:
            diff = self._run_git(
                ["diff", "HEAD", "--no-color"], cwd=repo_path, timeout=10
            ).stdout
        except GitError:
            pass
        if len(diff) > max_diff_chars:
            diff = diff[:max_diff_chars] + "\n\n[... diff truncated ...]"

        logger.info(f"Git changes: {len(files)} files modified")
        return WorkspaceChanges(diff=diff, files=files)

    def commit_all(self, repo_path: str | Path, message: str) -> None:
        """Stage everything and commit.

        Raises:
            GitError: If staging or committing fails
        """
        self._run_git(["add", "-A"], cwd=repo_path)
        self._run_git(["commit", "-m", message], cwd=repo_path)

    def open_pull_request(
        self, repo_path: str | Path, title: str, body: str
    ) -> str | None:
        """Push the current branch and open a pull request with the GitHub CLI.

        Returns:
            The pull request URL, or None if it could not be created
        """
        try:
            self._run_git(["push", "-u", "origin", "HEAD"], cwd=repo_path, timeout=120)
            result = subprocess.run(
                ["gh", "pr", "create", "--title", title, "--body", body],
                cwd=repo_path,
                capture_output=True,
                text=True,
                check=True,
                timeout=120,
            )
        except (GitError, subprocess.SubprocessError, OSError) as e:
            logger.warning(f"Could not create PR: {self._redact(str(e))}")
            return None

        pr_url = extract_pr_url(result.stdout)
        if pr_url:
            logger.info(f"Opened pull request {pr_url}")
        return pr_url
