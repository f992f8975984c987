"""Corrective change classification from labels and branch names."""

from __future__ import annotations

from typing import Iterable

from .models import Classification

CORRECTIVE_LABEL = "bug"
CORRECTIVE_BRANCH_PREFIXES = ("bugfix", "hotfix", "fix", "patch")


def classify(labels: Iterable[str], branch: str) -> Classification:
    """Decide whether a pull request is a corrective change.

    A pull request is corrective when it carries the ``bug`` label or its
    branch name starts with one of the corrective prefixes. ``needs_label`` is
    set when only the branch heuristic matched, so the caller can ask the
    source-control provider to add the missing label.
    """
    has_label = CORRECTIVE_LABEL in set(labels)
    branch_matches = (branch or "").lower().startswith(CORRECTIVE_BRANCH_PREFIXES)

    return Classification(
        is_corrective=has_label or branch_matches,
        needs_label=branch_matches and not has_label,
    )
