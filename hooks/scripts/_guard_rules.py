#!/usr/bin/env python3
"""Rule selection for the Document Guard.

Glob syntax (matched against forward-slash paths relative to the project):
- ``**``  any characters, including ``/``; ``**/`` also matches zero segments
- ``*``   any characters within one segment
- ``?``   exactly one non-``/`` character

Patterns that do not start with ``.`` or ``/`` float: they may match at
any segment boundary, so ``*.sh`` matches ``scripts/build.sh``. Patterns
starting with ``.`` or ``/`` are anchored at the start of the path. Every
pattern is anchored at the end.

Selection is additive: every matching rule contributes its checks. The
returned list is ordered most-specific-first so block messages list the
closest rule first.
"""

import re
from functools import lru_cache
from typing import Any

from _guard_types import Rule
from _guard_utils import log_guard

_GLOBSTAR = "\x00GLOBSTAR\x00"
_GLOBSTAR_DIR = "\x00GLOBSTAR_DIR\x00"


@lru_cache(maxsize=256)
def compile_glob(pattern: str) -> "re.Pattern[str]":
    """Translate a glob into an anchored regex."""
    escaped = re.sub(r"[.+^${}()|\[\]\\]", lambda m: "\\" + m.group(0), pattern)
    translated = (
        escaped.replace("**/", _GLOBSTAR_DIR)
        .replace("**", _GLOBSTAR)
        .replace("*", "[^/]*")
        .replace("?", "[^/]")
        .replace(_GLOBSTAR_DIR, "(?:.*/)?")
        .replace(_GLOBSTAR, ".*")
    )

    if not pattern.startswith(".") and not pattern.startswith("/"):
        translated = "(?:^|/)" + translated
    else:
        translated = "^" + translated

    return re.compile(translated + "$")


def match_glob(pattern: str, path: str) -> bool:
    """Return True if the relative ``path`` matches the glob ``pattern``."""
    if not pattern:
        return False
    return compile_glob(pattern).search(path.replace("\\", "/")) is not None


def pattern_specificity(pattern: str) -> int:
    """Count of pattern segments without a ``*`` wildcard. Ranking only."""
    return sum(1 for segment in pattern.split("/") if "*" not in segment)


def load_rules(config: dict[str, Any]) -> list[Rule]:
    """Build Rule objects from config, skipping malformed entries."""
    rules = []
    for i, entry in enumerate(config.get("rules") or []):
        if not isinstance(entry, dict) or not entry.get("pattern"):
            log_guard("WARN", f"Skipping malformed rule at rules[{i}]")
            continue
        rules.append(Rule.from_config(entry))
    return rules


def find_matching_rules(rules: list[Rule], relative_path: str) -> list[Rule]:
    """All rules whose pattern matches, most specific first.

    ``sorted`` is stable, so equally specific rules keep config order.
    """
    matched = [rule for rule in rules if match_glob(rule.pattern, relative_path)]
    return sorted(matched, key=lambda rule: pattern_specificity(rule.pattern), reverse=True)
