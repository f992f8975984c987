"""Tests for corrective change classification."""

import sys
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dora_metrics.classifier import classify


def test_classify_bug_label_is_corrective_without_label_request():
    """Verify a labelled pull request is corrective and needs no label."""
    classification = classify({"bug", "dependencies"}, "feature/thing")

    assert classification.is_corrective is True
    assert classification.needs_label is False


@pytest.mark.parametrize("branch", ["bugfix/npe", "hotfix-login", "fix/typo", "patch-1", "HotFix/upper"])
def test_classify_corrective_branch_requests_label(branch):
    """Verify a corrective branch prefix without the label asks for the label."""
    classification = classify(set(), branch)

    assert classification.is_corrective is True
    assert classification.needs_label is True


def test_classify_branch_and_label_does_not_request_label():
    """Verify a labelled corrective branch does not ask for the label again."""
    classification = classify(["bug"], "bugfix/npe")

    assert classification.is_corrective is True
    assert classification.needs_label is False


@pytest.mark.parametrize("branch", ["feature/fix-later", "main", "", "dependabot/bugfix"])
def test_classify_non_corrective(branch):
    """Verify branches that do not start with a corrective prefix are not corrective."""
    classification = classify(["enhancement"], branch)

    assert classification.is_corrective is False
    assert classification.needs_label is False
