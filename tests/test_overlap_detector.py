"""Tests for overlap detection and safe-group formation."""

from __future__ import annotations

from pathlib import Path

import pytest

from parallel_agents.file_predictor import FilePrediction, FilePredictor, PredictedFile, PredictionMethod
from parallel_agents.overlap_detector import OverlapDetector, SafeGroup, Severity, classify_path
from parallel_agents.task_analyzer import TaskAnalyzer


def pred(task_id: str, *paths: str) -> FilePrediction:
    return FilePrediction(
        task_id=task_id,
        candidates=[PredictedFile(p, PredictionMethod.EXPLICIT) for p in paths],
        confidence=0.95 if paths else 0.0,
    )


@pytest.fixture
def detector() -> OverlapDetector:
    return OverlapDetector()


@pytest.mark.parametrize(
    ("path", "severity"),
    [
        ("src/app.py", Severity.CRITICAL),
        ("web/index.TSX", Severity.CRITICAL),
        ("package.json", Severity.WARNING),
        ("poetry.lock", Severity.WARNING),
        ("Makefile", Severity.WARNING),
        ("assets/logo.png", Severity.WARNING),
        ("README.md", Severity.INFO),
        ("docs/notes.txt", Severity.INFO),
    ],
)
def test_classify_path(path, severity):
    assert classify_path(path) is severity


class TestDetect:
    def test_no_overlap(self, detector):
        result = detector.detect([pred("a", "a.py"), pred("b", "b.py")])
        assert not result.has_overlap
        assert result.pairs == []
        assert [g.task_ids for g in result.safe_groups] == [["a", "b"]]

    def test_pair_takes_highest_severity(self, detector):
        result = detector.detect([pred("a", "README.md", "src/x.py"), pred("b", "README.md", "src/x.py")])
        assert len(result.pairs) == 1
        pair = result.pairs[0]
        assert (pair.task1, pair.task2) == ("a", "b")
        assert pair.severity is Severity.CRITICAL
        assert pair.files == ["README.md", "src/x.py"]
        assert result.overlapping_files["src/x.py"] == ["a", "b"]

    def test_three_way_overlap_gives_three_pairs(self, detector):
        result = detector.detect([pred("a", "x.py"), pred("b", "x.py"), pred("c", "x.py")])
        assert {(p.task1, p.task2) for p in result.pairs} == {("a", "b"), ("a", "c"), ("b", "c")}
        assert [g.task_ids for g in result.safe_groups] == [["a"], ["b"], ["c"]]

    def test_info_overlap_does_not_split_groups(self, detector):
        result = detector.detect([pred("a", "CHANGELOG.md"), pred("b", "CHANGELOG.md")])
        assert result.has_overlap
        assert result.pairs[0].severity is Severity.INFO
        assert [g.task_ids for g in result.safe_groups] == [["a", "b"]]

    def test_warning_overlap_splits_groups(self, detector):
        result = detector.detect([pred("a", "package.json"), pred("b", "package.json")])
        assert [g.task_ids for g in result.safe_groups] == [["a"], ["b"]]

    def test_first_fit_grouping(self, detector):
        predictions = [
            pred("a", "shared.py"),
            pred("b", "shared.py"),
            pred("c", "c.py"),
            pred("d", "shared.py", "c.py"),
        ]
        groups = detector.detect(predictions).safe_groups
        assert [g.id for g in groups] == ["safe-group-1", "safe-group-2", "safe-group-3"]
        assert [g.task_ids for g in groups] == [["a", "c"], ["b"], ["d"]]
        assert groups[0].files == ["shared.py", "c.py"]

    def test_grouping_is_deterministic(self, detector):
        predictions = [pred("a", "x.py", "y.py"), pred("b", "y.py"), pred("c", "z.py"), pred("d", "x.py")]
        first = detector.detect(predictions).to_dict()
        second = detector.detect(predictions).to_dict()
        assert first == second

    def test_unpredicted_tasks_are_groupable(self, detector):
        groups = detector.detect([pred("a"), pred("b")]).safe_groups
        assert [g.task_ids for g in groups] == [["a", "b"]]


class TestConflictFree:
    def test_batch_without_critical(self, detector):
        assert detector.is_conflict_free([pred("a", "package.json"), pred("b", "package.json")])

    def test_batch_with_critical(self, detector):
        assert not detector.is_conflict_free([pred("a", "x.py"), pred("b", "x.py")])

    def test_grouping_checked_per_group(self, detector):
        predictions = [pred("a", "x.py"), pred("b", "x.py")]
        assert detector.is_conflict_free(predictions, [SafeGroup("g1", ["a"]), SafeGroup("g2", ["b"])])
        assert not detector.is_conflict_free(predictions, [SafeGroup("g1", ["a", "b"])])

    def test_detector_groups_are_always_conflict_free(self, detector):
        predictions = [
            pred("a", "x.py", "package.json"),
            pred("b", "package.json"),
            pred("c", "x.py", "README.md"),
            pred("d", "README.md"),
            pred("e", "y.py"),
        ]
        groups = detector.detect(predictions).safe_groups
        assert detector.is_conflict_free(predictions, groups)

    def test_can_run_in_parallel(self, detector):
        assert detector.can_run_in_parallel(pred("a", "README.md"), pred("b", "README.md"))
        assert not detector.can_run_in_parallel(pred("a", "setup.cfg"), pred("b", "setup.cfg"))


def test_max_parallelization(detector):
    assert detector.max_parallelization([pred("a", "x.py"), pred("b", "y.py"), pred("c", "x.py")]) == 2
    assert detector.max_parallelization([]) == 0


def test_analyze_and_report(detector):
    predictions = [pred("a", "x.py"), pred("b", "x.py"), pred("c", "z.py")]
    analysis = detector.analyze(predictions)
    assert analysis.total_tasks == 3
    assert analysis.blocked == ["a", "b"]
    assert analysis.parallelizable == 1
    assert analysis.matrix["a"] == ["b"]
    assert "Most conflicting files: x.py" in analysis.recommendations
    report = detector.generate_report(predictions)
    assert "[critical] a <-> b: x.py" in report
    assert "safe-group-1: a, c" in report


def test_analyze_without_overlap(detector):
    analysis = detector.analyze([pred("a", "x.py"), pred("b", "y.py")])
    assert "All tasks can be safely parallelized." in analysis.recommendations


def test_login_signup_password_reset_grouping(git_repo: Path, commit_files, detector):
    """Login and signup run together; the task touching shared auth utils is isolated."""
    commit_files(
        git_repo,
        {
            "src/components/LoginForm.tsx": "export {}\n",
            "src/components/SignupForm.tsx": "export {}\n",
            "src/auth/utils.ts": "export {}\n",
        },
    )
    tasks = TaskAnalyzer().parse_task_descriptions(
        ["Add login form", "Add signup form", "Add password reset touching src/auth/utils.ts"]
    )
    predictor = FilePredictor(git_repo, use_git_history=False)
    predictions = predictor.predict_all(tasks)

    assert "src/components/LoginForm.tsx" in predictions[0].files
    assert "src/components/SignupForm.tsx" in predictions[1].files
    assert not set(predictions[0].files) & set(predictions[1].files)

    result = detector.detect(predictions)
    assert [g.task_ids for g in result.safe_groups] == [["task-1", "task-2"], ["task-3"]]
    assert detector.is_conflict_free(predictions, result.safe_groups)
