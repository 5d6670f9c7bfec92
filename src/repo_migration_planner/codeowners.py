"""CODEOWNERS parsing.

Owners are classified into team references (``@org/team``) and user
references (``@user`` or an e-mail address). Everything else on an owner
position, such as a bare word, is ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Final

# Probed in this order; the first path that resolves to a file wins
CODEOWNERS_PATHS: Final = (".github/CODEOWNERS", "docs/CODEOWNERS", "CODEOWNERS")


class OwnerKind(StrEnum):
    TEAM = "team"
    USER = "user"
    IGNORED = "ignored"


@dataclass(frozen=True)
class CodeownersRefs:
    """Sorted, de-duplicated team and user references from one CODEOWNERS file."""

    teams: tuple[str, ...] = ()
    users: tuple[str, ...] = ()


def classify_codeowner(owner: str) -> OwnerKind:
    """Classify a single owner token."""
    if owner.startswith("@"):
        return OwnerKind.TEAM if "/" in owner else OwnerKind.USER
    if "@" in owner:
        return OwnerKind.USER
    return OwnerKind.IGNORED


def parse_codeowners(content: str) -> CodeownersRefs:
    """Extract team and user references from CODEOWNERS content.

    The first token of every rule is the path pattern and is skipped. Tokens
    after an inline ``#`` comment are not owners.
    """
    teams: set[str] = set()
    users: set[str] = set()
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        for owner in line.split()[1:]:
            if owner.startswith("#"):
                break
            kind = classify_codeowner(owner)
            if kind is OwnerKind.TEAM:
                teams.add(owner)
            elif kind is OwnerKind.USER:
                users.add(owner)
    return CodeownersRefs(teams=tuple(sorted(teams)), users=tuple(sorted(users)))


def serialize_codeowners(refs: CodeownersRefs, pattern: str = "*") -> str:
    """Render references as a CODEOWNERS file with one rule per owner."""
    lines = ["# Generated by repo-migration-planner"]
    lines.extend(f"{pattern} {owner}" for owner in (*refs.teams, *refs.users))
    return "\n".join(lines) + "\n"
