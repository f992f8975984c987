"""Cross-reference extraction from pull request text.

Corrective pull requests point at the change they fix (``#123``) and at the
incident ticket they resolve (``FAGSYSTEM-42``). Authors frequently correct an
earlier wrong reference in a later comment, so the last match in document
order wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar, Union

from .models import PullRequestFact

TextInput = Union[str, Sequence[str], None]
T = TypeVar("T")

_PULL_REFERENCE = re.compile(r"#(\d+)")


def _join(text: TextInput) -> str:
    if text is None:
        return ""
    if isinstance(text, str):
        return text
    return "\n".join(part for part in text if part)


def find_pull_reference(text: TextInput) -> Optional[int]:
    """Return the last ``#<digits>`` reference in ``text``, or ``None``."""
    matches = _PULL_REFERENCE.findall(_join(text))
    if not matches:
        return None
    return int(matches[-1])


def find_issue_reference(text: TextInput, project_key: str) -> Optional[str]:
    """Return the last ``<PROJECT_KEY>-<digits>`` reference, upper-cased.

    The project key is matched case-insensitively.
    """
    if not project_key:
        return None

    pattern = re.compile(rf"\b{re.escape(project_key)}-(\d+)\b", re.IGNORECASE)
    matches = pattern.findall(_join(text))
    if not matches:
        return None
    return f"{project_key.upper()}-{matches[-1]}"


@dataclass(frozen=True, slots=True)
class References:
    """Resolved references of a corrective pull request."""

    pull: Optional[int]
    ticket: Optional[str]


def _text_sources(pull: PullRequestFact) -> List[TextInput]:
    """Text sources in precedence order: comments, commit messages, description."""
    return [
        pull.comments,
        [commit.message for commit in pull.commits],
        pull.body,
    ]


def _first_match(
    sources: Iterable[TextInput],
    extract: Callable[[TextInput], Optional[T]],
) -> Optional[T]:
    for source in sources:
        found = extract(source)
        if found is not None:
            return found
    return None


def resolve_references(pull: PullRequestFact, project_key: str) -> References:
    """Resolve the referenced pull request and ticket of ``pull``.

    Both kinds are resolved independently using the same precedence; the first
    source that yields a match stops the search for that kind.
    """
    sources = _text_sources(pull)
    referenced_pull = _first_match(sources, find_pull_reference)
    referenced_ticket = _first_match(
        sources, lambda source: find_issue_reference(source, project_key)
    )
    return References(pull=referenced_pull, ticket=referenced_ticket)
