"""
Pattern Pipeline Module - in-process emulation of `grep | grep -v` chains

Handles:
- Parsing pipe-separated grep stages into include/exclude regex tests
- Treating invalid regular expressions as literal text
- AND-evaluation of all stages against a line

Stages that are not `grep [-v] <pattern>` are dropped without error.
"""
import re
from dataclasses import dataclass
from typing import List, Pattern, Tuple

# grep "pattern" | grep -v 'pattern' | grep pattern
_STAGE_RE = re.compile(
    r'^grep\s+(-v\s+)?(?:"([^"]+)"|\'([^\']+)\'|(\S+))$',
    re.IGNORECASE,
)


@dataclass(frozen=True)
class PatternStage:
    """One grep stage: the line must match (or, with exclude, must not match)"""
    pattern: Pattern
    exclude: bool = False

    def passes(self, line: str) -> bool:
        matched = self.pattern.search(line) is not None
        return not matched if self.exclude else matched


def _compile(text: str) -> Pattern:
    try:
        return re.compile(text, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(text), re.IGNORECASE)


def parse_with_diagnostics(expression: str) -> Tuple[List[PatternStage], List[str]]:
    """
    Parse a filter expression and report the stages that were dropped

    Args:
        expression: e.g. 'grep "ERROR" | grep -v "noisy"'

    Returns:
        Tuple of (stages in order, texts of unrecognized stages)
    """
    stages: List[PatternStage] = []
    dropped: List[str] = []
    if not expression or not expression.strip():
        return stages, dropped

    for part in expression.split('|'):
        part = part.strip()
        if not part:
            continue

        match = _STAGE_RE.match(part)
        if not match:
            dropped.append(part)
            continue

        exclude = bool(match.group(1))
        text = match.group(2) or match.group(3) or match.group(4)
        stages.append(PatternStage(pattern=_compile(text), exclude=exclude))

    return stages, dropped


def parse(expression: str) -> List[PatternStage]:
    """Translate a grep pipeline expression into ordered pattern stages."""
    return parse_with_diagnostics(expression)[0]


def apply(line: str, stages: List[PatternStage]) -> bool:
    """True iff the line passes every stage; an empty stage list passes everything."""
    for stage in stages:
        if not stage.passes(line):
            return False
    return True
