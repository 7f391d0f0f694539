"""
Guardrail Policy

Pure classification of agent-changed paths against the UI-only containment
rules. The denylist always wins over the allowlist; anything matching
neither is unclassified and fails the job just like a denied path.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from iterbuild.domain.models import DiffSummary
from iterbuild.exceptions import DeniedPathViolation, EmptyDiff, OutsideAllowlistViolation

ALLOWED_PREFIXES: Tuple[str, ...] = (
    "src/app/demo/",
    "src/components/",
    "src/redux/",
    "public/",
)

DENIED_PREFIXES: Tuple[str, ...] = (
    "src/app/api/",
    "src/lib/miralo/",
    "src/app/miralo/",
)

DENIED_FILES: Tuple[str, ...] = (
    "package.json",
    "bun.lock",
    "next.config.js",
    "tsconfig.json",
)


class PathVerdict(str, enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class GuardrailReport:
    changed_paths: List[str]
    verdicts: dict = field(default_factory=dict)


def normalize_path(path: str) -> str:
    normalized = str(path or "").strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


class GuardrailPolicy:
    """Allow/deny path policy constraining which files an agent change may touch."""

    def __init__(
        self,
        allowed_prefixes: Iterable[str] = ALLOWED_PREFIXES,
        denied_prefixes: Iterable[str] = DENIED_PREFIXES,
        denied_files: Iterable[str] = DENIED_FILES,
    ) -> None:
        self.allowed_prefixes = tuple(allowed_prefixes)
        self.denied_prefixes = tuple(denied_prefixes)
        self.denied_files = frozenset(denied_files)

    def is_denied(self, path: str) -> bool:
        normalized = normalize_path(path)
        return normalized in self.denied_files or normalized.startswith(self.denied_prefixes)

    def is_allowed(self, path: str) -> bool:
        return normalize_path(path).startswith(self.allowed_prefixes)

    def classify(self, path: str) -> PathVerdict:
        if self.is_denied(path):
            return PathVerdict.DENIED
        if self.is_allowed(path):
            return PathVerdict.ALLOWED
        return PathVerdict.UNCLASSIFIED

    def evaluate(self, changed_paths: Iterable[str]) -> GuardrailReport:
        """Raises on the first violated rule: empty diff, then denied paths, then unclassified paths."""
        paths = [normalize_path(p) for p in changed_paths if normalize_path(p)]
        if not paths:
            raise EmptyDiff("no files changed by coding agent.")

        verdicts = {path: self.classify(path) for path in paths}

        denied = [path for path in paths if verdicts[path] is PathVerdict.DENIED]
        if denied:
            raise DeniedPathViolation(f"denied paths changed: {', '.join(denied)}", paths=denied)

        outside = [path for path in paths if verdicts[path] is not PathVerdict.ALLOWED]
        if outside:
            raise OutsideAllowlistViolation(f"paths outside allowlist changed: {', '.join(outside)}", paths=outside)

        return GuardrailReport(changed_paths=paths, verdicts=verdicts)

    def describe(self) -> dict:
        return {
            "allowed": [prefix.rstrip("/") for prefix in self.allowed_prefixes],
            "forbidden": [prefix.rstrip("/") for prefix in self.denied_prefixes] + list(sorted(self.denied_files)),
        }


_FILES_RE = re.compile(r"(\d+)\s+files?\s+changed")
_INSERTIONS_RE = re.compile(r"(\d+)\s+insertions?\(\+\)")
_DELETIONS_RE = re.compile(r"(\d+)\s+deletions?\(-\)")


def parse_shortstat(shortstat: str) -> DiffSummary:
    """Parses `git diff --shortstat` output into a DiffSummary."""
    files = _FILES_RE.search(shortstat or "")
    insertions = _INSERTIONS_RE.search(shortstat or "")
    deletions = _DELETIONS_RE.search(shortstat or "")
    return DiffSummary(
        files_changed=int(files.group(1)) if files else 0,
        insertions=int(insertions.group(1)) if insertions else 0,
        deletions=int(deletions.group(1)) if deletions else 0,
    )
