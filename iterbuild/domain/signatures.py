"""
Known non-fatal failure signatures.

A failed build or clickthrough run whose output matches one of these is
downgraded to a warning code on the job instead of failing it.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

WARNING_BUILD_SKIPPED_GENERATE_BUILD_ID = "VALIDATION_BUILD_SKIPPED_GENERATE_BUILD_ID"
WARNING_CLICKTHROUGH_SKIPPED_REACT_REFRESH = "VALIDATION_CLICKTHROUGH_SKIPPED_REACT_REFRESH"
WARNING_SPEC_PRODUCT_MISSING = "SPEC_PRODUCT_MISSING"
WARNING_SPEC_TECH_MISSING = "SPEC_TECH_MISSING"


@dataclass(frozen=True)
class BenignSignature:
    """A known non-blocking failure pattern and the warning code it downgrades to."""
    name: str
    pattern: str
    warning_code: str
    flags: int = 0

    def matches(self, output: str) -> bool:
        return re.search(self.pattern, output or "", self.flags) is not None


class SignatureSet:
    def __init__(self, signatures: Iterable[BenignSignature] = ()) -> None:
        self.signatures: Tuple[BenignSignature, ...] = tuple(signatures)

    def match(self, output: str) -> Optional[BenignSignature]:
        for signature in self.signatures:
            if signature.matches(output):
                return signature
        return None

    def with_signature(self, signature: BenignSignature) -> "SignatureSet":
        return SignatureSet((*self.signatures, signature))


BUILD_SIGNATURES = SignatureSet(
    [
        # Next.js generateBuildId crash under bun
        BenignSignature(
            name="generate_build_id",
            pattern=r"TypeError:\s+generate is not a function",
            warning_code=WARNING_BUILD_SKIPPED_GENERATE_BUILD_ID,
        ),
    ]
)

VALIDATOR_SIGNATURES = SignatureSet(
    [
        BenignSignature(
            name="react_fresh_plugin",
            pattern=r"ReactFreshWebpackPlugin",
            warning_code=WARNING_CLICKTHROUGH_SKIPPED_REACT_REFRESH,
        ),
        BenignSignature(
            name="undefined_version_destructure",
            pattern=r"Cannot destructure property 'version'",
            warning_code=WARNING_CLICKTHROUGH_SKIPPED_REACT_REFRESH,
        ),
    ]
)
