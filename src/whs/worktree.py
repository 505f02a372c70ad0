from __future__ import annotations

import re
import subprocess
from pathlib import Path

import structlog

from whs.config import ProjectConfig

logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorktreeError(RuntimeError):
    """Raised when a git worktree cannot be created or removed."""


def sanitize_branch(name: str) -> str:
    return _UNSAFE_CHARS.sub("-", name).strip("-") or "work"


class WorktreeManager:
    """One git worktree per work item, in a sibling ``<repo>-worktrees`` directory."""

    def __init__(self, root: str = "") -> None:
        self.root = Path(root).expanduser().resolve() if root else None

    @staticmethod
    def _run_git(
        repo: Path, args: list[str], check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=repo,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorktreeError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def path_for(self, project: ProjectConfig, item_id: str) -> Path:
        name = sanitize_branch(item_id)
        if self.root is not None:
            return self.root / project.name / name
        repo = project.resolved_repo_path
        return repo.parent / f"{repo.name}-worktrees" / name

    def list_paths(self, project: ProjectConfig) -> list[Path]:
        proc = self._run_git(project.resolved_repo_path, ["worktree", "list", "--porcelain"])
        return [
            Path(line.removeprefix("worktree ").strip())
            for line in proc.stdout.splitlines()
            if line.startswith("worktree ")
        ]

    def ensure(self, project: ProjectConfig, item_id: str) -> Path:
        """Return the item's worktree, creating it from the base branch if needed."""
        repo = project.resolved_repo_path
        path = self.path_for(project, item_id)
        if path.exists() and path.resolve() in {p.resolve() for p in self.list_paths(project)}:
            return path

        branch = sanitize_branch(item_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        proc = self._run_git(
            repo,
            ["worktree", "add", "-b", branch, str(path), project.base_branch],
            check=False,
        )
        if proc.returncode != 0:
            message = proc.stderr.strip() or proc.stdout.strip()
            if "already exists" not in message:
                raise WorktreeError(message)
            # Branch left over from an earlier run: check it out as-is.
            self._run_git(repo, ["worktree", "add", str(path), branch])
        logger.info("worktree_created", project=project.name, item_id=item_id, path=str(path))
        return path

    def remove(self, project: ProjectConfig, item_id: str, *, force: bool = False) -> bool:
        path = self.path_for(project, item_id)
        if not path.exists():
            return False
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        self._run_git(project.resolved_repo_path, args)
        logger.info("worktree_removed", project=project.name, item_id=item_id)
        return True
