"""Per-card git worktrees: creation, commit, diff, publish and disposal."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path

from kanban_agent.config import GitSettings
from kanban_agent.execution.models import DiffFile, DiffStats, WorktreeDiff, WorktreeInfo

logger = logging.getLogger(__name__)

_DIFF_SPLIT_RE = re.compile(r"^diff --git ", re.MULTILINE)
_DIFF_TARGET_RE = re.compile(r" b/(.+)$")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


class WorktreeError(RuntimeError):
    """A git or gh invocation failed."""

    def __init__(self, message: str, *, command: list[str], stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-")[:40]


def branch_name_for(card_id: int, title: str) -> str:
    return f"kanban/{card_id}-{slugify(title)}"


class WorktreeManager:
    """Isolated working directory plus branch for each card.

    The worktree is owned by a single card between ``ensure`` and ``dispose``.
    """

    def __init__(self, settings: GitSettings) -> None:
        self.settings = settings

    def worktree_path_for(self, repo_path: Path, card_id: int) -> Path:
        root = self.settings.worktrees_dir or repo_path.resolve().parent / "worktrees"
        return root / f"card-{card_id}"

    def ensure(self, repo_path: Path, card_id: int, title: str) -> WorktreeInfo:
        """Create the card worktree, or return it unchanged when it already exists."""

        branch_name = branch_name_for(card_id, title)
        worktree_path = self.worktree_path_for(repo_path, card_id)
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        if worktree_path.exists():
            return WorktreeInfo(worktree_path=str(worktree_path), branch_name=branch_name)

        if self._succeeds(repo_path, "rev-parse", "--verify", "--quiet", branch_name):
            logger.info("Deleting stale branch %s", branch_name)
            self._git(repo_path, "branch", "-D", branch_name)

        self._git(repo_path, "worktree", "add", str(worktree_path), "-b", branch_name)
        logger.info("Created worktree %s on %s", worktree_path, branch_name)
        return WorktreeInfo(worktree_path=str(worktree_path), branch_name=branch_name)

    def commit(self, worktree_path: Path, message: str) -> bool:
        """Stage everything and commit; returns False when nothing was staged."""

        self._git(worktree_path, "add", "-A")
        if self._succeeds(worktree_path, "diff", "--cached", "--quiet"):
            logger.info("Nothing to commit in %s", worktree_path)
            return False
        self._git(worktree_path, "commit", "-m", message)
        return True

    def diff(self, worktree_path: Path) -> WorktreeDiff:
        """Committed branch changes against the best base, merged with working changes."""

        base = self._resolve_diff_base(worktree_path)
        counts: dict[str, list[int]] = {}
        _merge_numstat(counts, self._git(worktree_path, "diff", "--numstat", base, "HEAD"))
        _merge_numstat(counts, self._git(worktree_path, "diff", "--numstat"))

        patches: dict[str, list[str]] = {}
        for output in (
            self._git(worktree_path, "diff", base, "HEAD"),
            self._git(worktree_path, "diff"),
        ):
            for path, patch in _split_unified_diff(output):
                patches.setdefault(path, []).append(patch)

        files: list[DiffFile] = []
        for path, (additions, deletions) in counts.items():
            files.append(
                DiffFile(
                    path=path,
                    status=_classify(additions, deletions),
                    additions=additions,
                    deletions=deletions,
                    diff="\n".join(patches.get(path, [])),
                ),
            )
        return WorktreeDiff(
            files=files,
            stats=DiffStats(
                total_files=len(files),
                total_additions=sum(item.additions for item in files),
                total_deletions=sum(item.deletions for item in files),
            ),
        )

    def publish(self, worktree_path: Path, title: str, body: str) -> str:
        """Push the worktree branch and open a pull request; returns its URL."""

        branch_name = self._git(worktree_path, "rev-parse", "--abbrev-ref", "HEAD").strip()
        self._git(worktree_path, "push", "-u", self.settings.remote, branch_name)
        output = self._run(
            ["gh", "pr", "create", "--title", title, "--body", body, "--head", branch_name],
            cwd=worktree_path,
        )
        lines = output.strip().splitlines()
        return lines[-1].strip() if lines else ""

    def dispose(self, worktree_path: Path) -> None:
        """Remove the worktree and its branch; falls back to deleting the directory."""

        if not worktree_path.exists():
            return
        try:
            common_dir = self._git(
                worktree_path,
                "rev-parse",
                "--path-format=absolute",
                "--git-common-dir",
            ).strip()
            repo_path = Path(common_dir).parent
            branch_name = self._git(worktree_path, "rev-parse", "--abbrev-ref", "HEAD").strip()
            self._git(repo_path, "worktree", "remove", str(worktree_path), "--force")
        except WorktreeError as error:
            logger.warning(
                "git worktree removal failed for %s, deleting directory: %s",
                worktree_path,
                error,
            )
            shutil.rmtree(worktree_path)
            return

        if branch_name and branch_name != "HEAD":
            try:
                self._git(repo_path, "branch", "-D", branch_name)
            except WorktreeError:
                logger.info("Branch %s already gone", branch_name)

    def _resolve_diff_base(self, worktree_path: Path) -> str:
        for ref in ("@{upstream}", self.settings.base_ref):
            if not ref:
                continue
            try:
                return self._git(worktree_path, "merge-base", "HEAD", ref).strip()
            except WorktreeError:
                continue
        try:
            return self._git(worktree_path, "rev-parse", "--verify", "--quiet", "HEAD~1").strip()
        except WorktreeError:
            return self.empty_tree(worktree_path)

    def empty_tree(self, worktree_path: Path) -> str:
        """Object id of the empty tree in the repository's own hash format."""

        return self._git(worktree_path, "hash-object", "-t", "tree", os.devnull).strip()

    def _git(self, cwd: Path, *args: str) -> str:
        return self._run(["git", "-C", str(cwd), *args])

    def _succeeds(self, cwd: Path, *args: str) -> bool:
        try:
            self._git(cwd, *args)
        except WorktreeError:
            return False
        return True

    def _run(self, command: list[str], *, cwd: Path | None = None) -> str:
        logger.debug("Running %s", " ".join(command))
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=cwd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.settings.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise WorktreeError(f"{command[0]} is not installed", command=command) from error
        except OSError as error:
            raise WorktreeError(f"{command[0]} failed to start: {error}", command=command) from error
        except subprocess.TimeoutExpired as error:
            raise WorktreeError(
                f"{command[0]} {command[1] if len(command) > 1 else ''} timed out".strip(),
                command=command,
            ) from error
        if completed.returncode != 0:
            stderr = completed.stderr.strip()
            detail = stderr.splitlines()[-1] if stderr else f"exit code {completed.returncode}"
            raise WorktreeError(detail, command=command, stderr=stderr)
        return completed.stdout


def _merge_numstat(counts: dict[str, list[int]], output: str) -> None:
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 3 or not parts[2]:
            continue
        added, deleted, path = parts[0], parts[1], parts[2]
        entry = counts.setdefault(path, [0, 0])
        entry[0] += 0 if added == "-" else int(added)
        entry[1] += 0 if deleted == "-" else int(deleted)


def _split_unified_diff(output: str) -> list[tuple[str, str]]:
    patches: list[tuple[str, str]] = []
    for part in _DIFF_SPLIT_RE.split(output):
        if not part.strip():
            continue
        header = part.split("\n", 1)[0]
        match = _DIFF_TARGET_RE.search(header)
        if match is not None:
            patches.append((match.group(1), ("diff --git " + part).rstrip("\n")))
    return patches


def _classify(additions: int, deletions: int) -> str:
    if additions > 0 and deletions == 0:
        return "added"
    if additions == 0 and deletions > 0:
        return "deleted"
    return "modified"
