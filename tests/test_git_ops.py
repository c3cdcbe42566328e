"""Unit tests for parallel_agents.git_ops against real temporary git repos."""

from __future__ import annotations

import subprocess
from pathlib import Path

from parallel_agents import git_ops


# ── helpers ──────────────────────────────────────────────────────────


def _commit_file(repo: Path, name: str, content: str, msg: str) -> None:
    (repo / name).write_text(content)
    subprocess.run(["git", "add", name], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", msg], cwd=repo, capture_output=True, check=True)


def _branch_with_file(repo: Path, worktree: Path, branch: str, name: str, content: str) -> None:
    git_ops.worktree_add(worktree, branch, "HEAD", cwd=repo)
    _commit_file(worktree, name, content, f"{branch}: {name}")


# ── TestRepoState ────────────────────────────────────────────────────


class TestRepoState:
    def test_is_git_repo(self, git_repo: Path, tmp_path: Path) -> None:
        assert git_ops.is_git_repo(cwd=git_repo)
        plain = tmp_path / "plain"
        plain.mkdir()
        assert not git_ops.is_git_repo(cwd=plain)

    def test_current_branch_and_head(self, git_repo: Path) -> None:
        # Default branch from `git init` may be "main" or "master" depending on config.
        assert git_ops.current_branch(cwd=git_repo)
        assert len(git_ops.head_commit(cwd=git_repo)) == 40

    def test_tracked_changes_ignores_untracked(self, git_repo: Path) -> None:
        (git_repo / "new.txt").write_text("x")
        assert git_ops.tracked_changes(cwd=git_repo) == []
        assert git_ops.has_dirty_worktree(cwd=git_repo)
        (git_repo / "README.md").write_text("changed")
        assert git_ops.tracked_changes(cwd=git_repo) == ["M README.md"]

    def test_add_and_commit(self, git_repo: Path) -> None:
        (git_repo / "file.txt").write_text("content")
        assert git_ops.add_and_commit("add file", cwd=git_repo)
        assert not git_ops.has_dirty_worktree(cwd=git_repo)

    def test_add_and_commit_nothing(self, git_repo: Path) -> None:
        assert not git_ops.add_and_commit("empty", cwd=git_repo)

    def test_ls_files(self, git_repo: Path, tmp_path: Path) -> None:
        assert git_ops.ls_files(cwd=git_repo) == ["README.md"]
        plain = tmp_path / "plain"
        plain.mkdir()
        assert git_ops.ls_files(cwd=plain) is None

    def test_log_name_only(self, git_repo: Path) -> None:
        _commit_file(git_repo, "a.py", "a", "Add parser")
        out = git_ops.log_name_only(5, cwd=git_repo)
        assert out.splitlines()[:2] == ["COMMIT:Add parser", "a.py"]

    def test_commit_count_and_changed_files(self, git_repo: Path) -> None:
        base = git_ops.head_commit(cwd=git_repo)
        _commit_file(git_repo, "a.txt", "a", "first")
        _commit_file(git_repo, "b.txt", "b", "second")
        assert git_ops.commit_count(base, cwd=git_repo) == 2
        assert git_ops.changed_files(base, cwd=git_repo) == ["a.txt", "b.txt"]

    def test_commit_count_bad_ref(self, git_repo: Path) -> None:
        assert git_ops.commit_count("nope", cwd=git_repo) == 0


# ── TestBranches ─────────────────────────────────────────────────────


class TestBranches:
    def test_branch_exists_false(self, git_repo: Path) -> None:
        assert not git_ops.branch_exists("nonexistent-branch", cwd=git_repo)

    def test_list_and_delete(self, git_repo: Path) -> None:
        subprocess.run(["git", "branch", "parallel/a"], cwd=git_repo, capture_output=True, check=True)
        subprocess.run(["git", "branch", "parallel/b"], cwd=git_repo, capture_output=True, check=True)
        assert git_ops.list_branches("parallel/*", cwd=git_repo) == ["parallel/a", "parallel/b"]
        assert git_ops.delete_branch("parallel/a", cwd=git_repo)
        assert not git_ops.branch_exists("parallel/a", cwd=git_repo)

    def test_delete_unmerged_needs_force(self, git_repo: Path, tmp_path: Path) -> None:
        _branch_with_file(git_repo, tmp_path / "wt", "feature", "f.txt", "f")
        git_ops.worktree_remove(tmp_path / "wt", force=True, cwd=git_repo)
        assert not git_ops.delete_branch("feature", cwd=git_repo)
        assert git_ops.delete_branch("feature", force=True, cwd=git_repo)


# ── TestWorktrees ────────────────────────────────────────────────────


class TestWorktrees:
    def test_add_list_remove(self, git_repo: Path, tmp_path: Path) -> None:
        wt = tmp_path / "wt"
        r = git_ops.worktree_add(wt, "parallel/x", "HEAD", cwd=git_repo)
        assert r.returncode == 0
        assert (wt / "README.md").exists()

        entries = git_ops.worktree_list(cwd=git_repo)
        assert len(entries) == 2
        added = entries[1]
        assert Path(added["path"]).resolve() == wt.resolve()
        assert added["branch"] == "parallel/x"
        assert added["head"] == git_ops.head_commit(cwd=git_repo)

        assert git_ops.worktree_remove(wt, cwd=git_repo)
        assert not wt.exists()
        assert len(git_ops.worktree_list(cwd=git_repo)) == 1

    def test_add_existing_branch_fails(self, git_repo: Path, tmp_path: Path) -> None:
        git_ops.worktree_add(tmp_path / "one", "dup", "HEAD", cwd=git_repo)
        r = git_ops.worktree_add(tmp_path / "two", "dup", "HEAD", cwd=git_repo)
        assert r.returncode != 0
        assert "dup" in git_ops.output_of(r)

    def test_remove_dirty_needs_force(self, git_repo: Path, tmp_path: Path) -> None:
        wt = tmp_path / "wt"
        git_ops.worktree_add(wt, "dirty", "HEAD", cwd=git_repo)
        (wt / "README.md").write_text("edited")
        assert not git_ops.worktree_remove(wt, cwd=git_repo)
        assert git_ops.worktree_remove(wt, force=True, cwd=git_repo)


# ── TestMerging ──────────────────────────────────────────────────────


class TestMerging:
    def test_try_merge_clean_leaves_no_trace(self, git_repo: Path, tmp_path: Path) -> None:
        _branch_with_file(git_repo, tmp_path / "wt", "feature", "f.txt", "f")
        head = git_ops.head_commit(cwd=git_repo)
        clean, conflicts, _ = git_ops.try_merge("feature", cwd=git_repo)
        assert clean
        assert conflicts == []
        assert git_ops.head_commit(cwd=git_repo) == head
        assert git_ops.operation_in_progress(cwd=git_repo) == ""
        assert not (git_repo / "f.txt").exists()

    def test_try_merge_conflict(self, git_repo: Path, tmp_path: Path) -> None:
        _branch_with_file(git_repo, tmp_path / "wt", "feature", "README.md", "theirs")
        _commit_file(git_repo, "README.md", "ours", "ours")
        clean, conflicts, output = git_ops.try_merge("feature", cwd=git_repo)
        assert not clean
        assert conflicts == ["README.md"]
        assert "CONFLICT" in output
        assert git_ops.operation_in_progress(cwd=git_repo) == ""
        assert (git_repo / "README.md").read_text() == "ours"

    def test_merge_commit(self, git_repo: Path, tmp_path: Path) -> None:
        _branch_with_file(git_repo, tmp_path / "wt", "feature", "f.txt", "f")
        r = git_ops.merge_commit("feature", "Merge feature", cwd=git_repo)
        assert r.returncode == 0
        assert (git_repo / "f.txt").read_text() == "f"

    def test_merge_squash_makes_single_commit(self, git_repo: Path, tmp_path: Path) -> None:
        wt = tmp_path / "wt"
        _branch_with_file(git_repo, wt, "feature", "a.txt", "a")
        _commit_file(wt, "b.txt", "b", "second")
        before = git_ops.head_commit(cwd=git_repo)
        r = git_ops.merge_squash("feature", "Squash feature", cwd=git_repo)
        assert r.returncode == 0
        assert git_ops.commit_count(before, cwd=git_repo) == 1

    def test_rebase_conflict_is_aborted(self, git_repo: Path, tmp_path: Path) -> None:
        wt = tmp_path / "wt"
        _branch_with_file(git_repo, wt, "feature", "README.md", "theirs")
        base = git_ops.current_branch(cwd=git_repo)
        _commit_file(git_repo, "README.md", "ours", "ours")
        r = git_ops.rebase(base, cwd=wt)
        assert r.returncode != 0
        assert git_ops.operation_in_progress(cwd=wt) == ""

    def test_reset_hard(self, git_repo: Path) -> None:
        head = git_ops.head_commit(cwd=git_repo)
        _commit_file(git_repo, "a.txt", "a", "a")
        assert git_ops.reset_hard(head, cwd=git_repo)
        assert git_ops.head_commit(cwd=git_repo) == head


# ── TestEnsureCleanGitState ──────────────────────────────────────────


class TestEnsureCleanGitState:
    def test_aborts_interrupted_merge(self, git_repo: Path, tmp_path: Path) -> None:
        _branch_with_file(git_repo, tmp_path / "wt", "feature", "README.md", "theirs")
        _commit_file(git_repo, "README.md", "ours", "ours")
        subprocess.run(["git", "merge", "feature"], cwd=git_repo, capture_output=True)
        assert git_ops.operation_in_progress(cwd=git_repo) == "merge"
        assert git_ops.conflicted_files(cwd=git_repo) == ["README.md"]

        git_ops.ensure_clean_git_state(cwd=git_repo)
        assert git_ops.operation_in_progress(cwd=git_repo) == ""
        assert git_ops.conflicted_files(cwd=git_repo) == []

    def test_noop_on_clean_repo(self, git_repo: Path) -> None:
        git_ops.ensure_clean_git_state(cwd=git_repo)
        assert git_ops.operation_in_progress(cwd=git_repo) == ""
