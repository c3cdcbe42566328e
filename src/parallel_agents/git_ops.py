"""Git operations: worktrees, branches, trial merges and integration."""

from __future__ import annotations

import subprocess
from pathlib import Path

from parallel_agents import log


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        cwd=cwd,
        check=check,
    )


def _lines(out: str) -> list[str]:
    return [line.strip() for line in out.splitlines() if line.strip()]


def output_of(proc: subprocess.CompletedProcess[str]) -> str:
    """Combined stdout/stderr of a git call, for error messages."""
    return "\n".join(part.strip() for part in (proc.stdout, proc.stderr) if part and part.strip())


def is_git_repo(cwd: Path | None = None) -> bool:
    r = _git("rev-parse", "--is-inside-work-tree", cwd=cwd)
    return r.returncode == 0 and r.stdout.strip() == "true"


def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else "main"


def head_commit(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else ""


def branch_exists(name: str, cwd: Path | None = None) -> bool:
    r = _git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.returncode == 0


def delete_branch(name: str, force: bool = False, cwd: Path | None = None) -> bool:
    flag = "-D" if force else "-d"
    r = _git("branch", flag, name, cwd=cwd)
    return r.returncode == 0


def list_branches(pattern: str, cwd: Path | None = None) -> list[str]:
    r = _git("branch", "--list", "--format=%(refname:short)", pattern, cwd=cwd)
    if r.returncode != 0:
        return []
    return _lines(r.stdout)


def push(branch: str, cwd: Path | None = None) -> bool:
    r = _git("push", "origin", branch, cwd=cwd)
    return r.returncode == 0


# ── Working tree state ───────────────────────────────────────────────


def tracked_changes(cwd: Path | None = None) -> list[str]:
    """Entries from ``git status --porcelain`` for tracked files only.

    Untracked files cannot leak into a worktree or a merge, so they do not
    make the primary workspace dirty.
    """
    r = _git("status", "--porcelain", "--untracked-files=no", cwd=cwd)
    if r.returncode != 0:
        raise RuntimeError(f"git status failed: {output_of(r)}")
    return _lines(r.stdout)


def has_dirty_worktree(cwd: Path | None = None) -> bool:
    r = _git("status", "--porcelain", cwd=cwd)
    return bool(r.stdout.strip())


def add_and_commit(message: str, cwd: Path | None = None) -> bool:
    _git("add", "-A", cwd=cwd)
    r = _git("commit", "-m", message, cwd=cwd)
    return r.returncode == 0


def git_dir(cwd: Path | None = None) -> Path | None:
    r = _git("rev-parse", "--git-dir", cwd=cwd)
    if r.returncode != 0:
        return None
    path = Path(r.stdout.strip())
    if not path.is_absolute():
        path = (cwd or Path.cwd()) / path
    return path


def operation_in_progress(cwd: Path | None = None) -> str:
    """Name of an interrupted merge/rebase/cherry-pick, or ``""``."""
    gd = git_dir(cwd)
    if gd is None:
        return ""
    if (gd / "MERGE_HEAD").exists():
        return "merge"
    if (gd / "rebase-merge").exists() or (gd / "rebase-apply").exists():
        return "rebase"
    if (gd / "CHERRY_PICK_HEAD").exists():
        return "cherry-pick"
    return ""


def commit_count(base: str, head: str = "HEAD", cwd: Path | None = None) -> int:
    r = _git("rev-list", "--count", f"{base}..{head}", cwd=cwd)
    if r.returncode != 0:
        return 0
    try:
        return int(r.stdout.strip())
    except ValueError:
        return 0


def changed_files(base: str, head: str = "HEAD", cwd: Path | None = None) -> list[str]:
    r = _git("diff", "--name-only", f"{base}...{head}", cwd=cwd)
    if r.returncode != 0:
        return []
    return _lines(r.stdout)


def conflicted_files(cwd: Path | None = None) -> list[str]:
    r = _git("diff", "--name-only", "--diff-filter=U", cwd=cwd)
    if r.returncode != 0:
        return []
    return _lines(r.stdout)


def ls_files(cwd: Path | None = None) -> list[str] | None:
    """Tracked paths, or ``None`` when *cwd* is not a git checkout."""
    r = _git("ls-files", cwd=cwd)
    if r.returncode != 0:
        return None
    return _lines(r.stdout)


def log_name_only(depth: int, cwd: Path | None = None) -> str:
    """``git log`` of the last *depth* commits: ``COMMIT:<subject>`` then touched files."""
    r = _git("log", "--name-only", "--pretty=format:COMMIT:%s", f"-{depth}", cwd=cwd)
    return r.stdout if r.returncode == 0 else ""


# ── Worktree management ─────────────────────────────────────────────


def worktree_prune(cwd: Path | None = None) -> None:
    _git("worktree", "prune", cwd=cwd)


def worktree_add(
    worktree_dir: Path, branch: str, base: str, cwd: Path | None = None
) -> subprocess.CompletedProcess[str]:
    """Create *branch* from *base* and check it out at *worktree_dir*."""
    return _git("worktree", "add", "-b", branch, str(worktree_dir), base, cwd=cwd)


def worktree_remove(worktree_dir: Path, force: bool = False, cwd: Path | None = None) -> bool:
    args = ["worktree", "remove"]
    if force:
        args.append("--force")
    r = _git(*args, str(worktree_dir), cwd=cwd)
    return r.returncode == 0


def worktree_list(cwd: Path | None = None) -> list[dict[str, str]]:
    """Parse ``git worktree list --porcelain`` into ``{path, head, branch}`` records."""
    r = _git("worktree", "list", "--porcelain", cwd=cwd)
    if r.returncode != 0:
        return []
    entries: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in r.stdout.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
            current = {}
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            current = {"path": value, "head": "", "branch": ""}
        elif key == "HEAD":
            current["head"] = value
        elif key == "branch":
            current["branch"] = value.removeprefix("refs/heads/")
    if current:
        entries.append(current)
    return entries


# ── Merging ──────────────────────────────────────────────────────────


def merge_abort(cwd: Path | None = None) -> None:
    _git("merge", "--abort", cwd=cwd)


def try_merge(branch: str, cwd: Path | None = None) -> tuple[bool, list[str], str]:
    """Trial-merge *branch* without committing, then restore the previous state.

    Returns ``(clean, conflicted_paths, git_output)``.
    """
    r = _git("merge", "--no-commit", "--no-ff", branch, cwd=cwd)
    conflicts = conflicted_files(cwd=cwd) if r.returncode != 0 else []
    if operation_in_progress(cwd) == "merge":
        merge_abort(cwd=cwd)
    return r.returncode == 0, conflicts, output_of(r)


def merge_commit(branch: str, message: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("merge", "--no-ff", "-m", message, branch, cwd=cwd)


def merge_squash(branch: str, message: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Squash *branch* into the index and commit it as one change."""
    r = _git("merge", "--squash", branch, cwd=cwd)
    if r.returncode != 0:
        return r
    staged = _git("diff", "--cached", "--quiet", cwd=cwd)
    if staged.returncode == 0:
        # Nothing to commit: branch content already present.
        return r
    return _git("commit", "-m", message, cwd=cwd)


def merge_ff_only(branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("merge", "--ff-only", branch, cwd=cwd)


def rebase(onto: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    r = _git("rebase", onto, cwd=cwd)
    if r.returncode != 0:
        _git("rebase", "--abort", cwd=cwd)
    return r


def reset_hard(ref: str, cwd: Path | None = None) -> bool:
    r = _git("reset", "--hard", ref, cwd=cwd)
    return r.returncode == 0


# ── Clean git state ──────────────────────────────────────────────────


def ensure_clean_git_state(cwd: Path | None = None) -> None:
    """Abort any interrupted merge/rebase/cherry-pick."""
    match operation_in_progress(cwd):
        case "merge":
            log.warn("Detected interrupted git merge. Aborting…")
            merge_abort(cwd=cwd)
        case "rebase":
            log.warn("Detected interrupted git rebase. Aborting…")
            _git("rebase", "--abort", cwd=cwd)
        case "cherry-pick":
            log.warn("Detected interrupted git cherry-pick. Aborting…")
            _git("cherry-pick", "--abort", cwd=cwd)
