# ABOUTME: Source checkout for the application directory using GitPython
# ABOUTME: Clones a fresh checkout or fast-forwards an existing one to the requested branch

import os
import shutil
import logging
import time
from pathlib import Path
from typing import Optional

import git

from webserver_setup.models import TaskResult
from webserver_setup.utils import retry_on_failure

logger = logging.getLogger(__name__)


class GitSourceManager:
    """Materializes an application's source tree from a git remote"""

    def __init__(self, backup_root: Optional[str] = None):
        self.backup_root = Path(backup_root) if backup_root else None

    @retry_on_failure(max_attempts=3, delay=2.0, exceptions=(git.GitCommandError,))
    def _clone(self, repo_url: str, branch: str, directory: Path) -> git.Repo:
        return git.Repo.clone_from(url=repo_url, to_path=str(directory), branch=branch)

    @retry_on_failure(max_attempts=3, delay=2.0, exceptions=(git.GitCommandError,))
    def _update(self, repo: git.Repo, branch: str) -> None:
        repo.git.fetch('origin')
        repo.git.checkout(branch)
        repo.git.pull('origin', branch)

    def _set_aside(self, directory: Path) -> Optional[Path]:
        """Move a non-repository directory out of the way before cloning"""
        if not any(directory.iterdir()):
            directory.rmdir()
            return None
        if self.backup_root is None:
            raise FileExistsError(f"{directory} is not empty and is not a git checkout")
        target = self.backup_root / str(directory).lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(directory), str(target))
        logger.warning(f"Moved existing {directory} to {target} before cloning")
        return target

    def clone_or_update(self, repo_url: str, branch: str, directory: str) -> TaskResult:
        """Clone ``repo_url`` into ``directory`` or update the checkout already there"""
        start_time = time.perf_counter()
        target = Path(directory)

        try:
            if (target / ".git").exists():
                logger.info(f"Git repository exists at {target}, pulling {branch}")
                repo = git.Repo(str(target))
                self._update(repo, branch)
                output = f"Updated {target} to origin/{branch}"
            else:
                if target.exists():
                    self._set_aside(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                logger.info(f"Cloning {repo_url} ({branch}) into {target}")
                repo = self._clone(repo_url, branch, target)
                output = f"Cloned {repo_url} ({branch}) into {target}"

            commit = repo.head.commit.hexsha[:12]
            return TaskResult(
                success=True,
                output=f"{output} at {commit}",
                execution_time=time.perf_counter() - start_time,
            )
        except (git.GitCommandError, git.InvalidGitRepositoryError, OSError) as e:
            logger.error(f"Failed to materialize {repo_url} into {target}: {e}")
            return TaskResult(
                success=False,
                output="",
                error=str(e),
                execution_time=time.perf_counter() - start_time,
            )

    def current_commit(self, directory: str) -> Optional[str]:
        if not os.path.isdir(os.path.join(directory, ".git")):
            return None
        try:
            return git.Repo(directory).head.commit.hexsha
        except (git.InvalidGitRepositoryError, ValueError) as e:
            logger.warning(f"Cannot read HEAD of {directory}: {e}")
            return None
