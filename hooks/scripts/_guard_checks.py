#!/usr/bin/env python3
"""Content checks for the Document Guard.

Each check compares proposed text against what it replaces and reports
removals only; additions and reorderings are never flagged.

For a full write the "old" side is the current file on disk, passed in
as ``prior`` (None for a new or unreadable file, in which case the
comparison is skipped). For a partial edit each region's old text is
compared with its new text.

The markdown/YAML parsing here is line-oriented on purpose: it only has
to find headings, top-level keys and flat frontmatter fields.
"""

import re
from typing import Any

import regex

from _guard_types import CheckKind, EditView, Rule, Tier, Violation
from _guard_utils import log_guard

REGEX_TIMEOUT_SECONDS = 0.5
"""Per-pattern timeout for credential regexes (ReDoS defense)."""

_KEY_RE = re.compile(r"^([a-zA-Z_][\w-]*)\s*:", re.MULTILINE)
_SECTION_RE = re.compile(r"^##[ \t]+(.+)$", re.MULTILINE)
_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+)$", re.MULTILINE)
_FRONTMATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---", re.DOTALL)
_FIELD_RE = re.compile(r"^(\w[\w-]*)\s*:\s*(.+)")


def _comparison_pairs(view: EditView, prior: str | None) -> list[tuple[str, str]]:
    """(old, new) text pairs to compare for this mutation."""
    if view.is_full_write:
        if prior is None:
            return []
        return [(prior, view.full_content)]
    return [(edit.old_text, edit.new_text) for edit in view.edits]


# ============================================================
# no_write_allowed
# ============================================================


def check_no_write_allowed(rule: Rule, relative_path: str) -> list[Violation]:
    return [
        Violation(
            check=CheckKind.NO_WRITE_ALLOWED.value,
            tier=rule.tier,
            message=rule.message or f"File is write-protected: {relative_path}",
        )
    ]


# ============================================================
# credential_scan
# ============================================================


def safe_regex_search(pattern: str, text: str, timeout: float = REGEX_TIMEOUT_SECONDS):
    """Regex search bounded by a timeout.

    Returns:
        Match object, or None on no match, timeout or invalid pattern.
    """
    try:
        return regex.search(pattern, text, timeout=timeout)
    except TimeoutError:
        log_guard("WARN", f"Regex timeout ({timeout}s) for pattern: {pattern[:50]}...")
        return None
    except regex.error as e:
        log_guard("WARN", f"Invalid regex pattern '{pattern[:50]}...': {e}")
        return None


def safe_regex_findall(pattern: str, text: str, timeout: float = REGEX_TIMEOUT_SECONDS) -> list[str]:
    """Every matched substring, bounded by one timeout for the whole scan.

    Matches found before a timeout are still returned; an invalid
    pattern yields no matches.
    """
    found = []
    try:
        for match in regex.finditer(pattern, text, timeout=timeout):
            found.append(match.group(0))
    except TimeoutError:
        log_guard("WARN", f"Regex timeout ({timeout}s) for pattern: {pattern[:50]}...")
    except regex.error as e:
        log_guard("WARN", f"Invalid regex pattern '{pattern[:50]}...': {e}")
    return found


def is_placeholder(matched: str, placeholder_patterns: list[str]) -> bool:
    return any(safe_regex_search(p, matched) is not None for p in placeholder_patterns)


def check_credential_scan(config: dict[str, Any], view: EditView) -> list[Violation]:
    """Scan proposed text for credentials. Always critical.

    Every match is examined; a pattern is reported once per fragment if
    any of its matches is not a placeholder (``example``, ``${VAR}``,
    ``{{ var }}``...).
    """
    patterns = config.get("credentialPatterns") or []
    placeholders = config.get("placeholderPatterns") or []
    violations = []

    for text in view.new_texts():
        if not text:
            continue
        for entry in patterns:
            if not isinstance(entry, dict):
                continue
            matches = safe_regex_findall(entry.get("regex", ""), text)
            if all(is_placeholder(matched, placeholders) for matched in matches):
                continue
            violations.append(
                Violation(
                    check=CheckKind.CREDENTIAL_SCAN.value,
                    tier=Tier.CRITICAL,
                    message=f"Potential {entry.get('name', 'credential')} detected in edit content",
                )
            )
    return violations


# ============================================================
# key_deletion_protection
# ============================================================


def extract_top_level_keys(text: str) -> list[str]:
    """Keys of lines shaped like ``identifier:``, in first-seen order."""
    return list(dict.fromkeys(_KEY_RE.findall(text)))


def find_removed_keys(old_text: str, new_text: str) -> list[str]:
    new_keys = set(extract_top_level_keys(new_text))
    return [key for key in extract_top_level_keys(old_text) if key not in new_keys]


def check_key_deletion(view: EditView, prior: str | None) -> list[Violation]:
    """Removed top-level keys. Always critical."""
    violations = []
    for old_text, new_text in _comparison_pairs(view, prior):
        for key in find_removed_keys(old_text, new_text):
            violations.append(
                Violation(
                    check=CheckKind.KEY_DELETION_PROTECTION.value,
                    tier=Tier.CRITICAL,
                    message=f"Top-level key '{key}' would be removed",
                )
            )
    return violations


# ============================================================
# section_preservation
# ============================================================


def extract_sections(text: str) -> list[str]:
    """Titles of ``## `` headings."""
    return [title.strip() for title in _SECTION_RE.findall(text)]


def find_removed_sections(old_text: str, new_text: str) -> list[str]:
    new_sections = set(extract_sections(new_text))
    return [title for title in extract_sections(old_text) if title not in new_sections]


def check_section_preservation(rule: Rule, view: EditView, prior: str | None) -> list[Violation]:
    violations = []
    for old_text, new_text in _comparison_pairs(view, prior):
        for title in find_removed_sections(old_text, new_text):
            if rule.protected_sections is not None and title not in rule.protected_sections:
                continue
            violations.append(
                Violation(
                    check=CheckKind.SECTION_PRESERVATION.value,
                    tier=rule.tier,
                    message=f'Section "## {title}" would be removed',
                )
            )
    return violations


# ============================================================
# heading_structure
# ============================================================


def extract_headings(text: str) -> list[tuple[int, str]]:
    return [(len(hashes), title.strip()) for hashes, title in _HEADING_RE.findall(text)]


def check_heading_structure(rule: Rule, view: EditView, prior: str | None) -> list[Violation]:
    """Every (level, title) heading of the old file must survive a full write."""
    if not view.is_full_write or prior is None:
        return []

    new_headings = set(extract_headings(view.full_content))
    violations = []
    for level, title in extract_headings(prior):
        if (level, title) in new_headings:
            continue
        violations.append(
            Violation(
                check=CheckKind.HEADING_STRUCTURE.value,
                tier=rule.tier,
                message=f'Heading "{"#" * level} {title}" would be removed',
            )
        )
    return violations


# ============================================================
# frontmatter_preservation
# ============================================================


def parse_simple_frontmatter(text: str) -> dict[str, str] | None:
    """Parse a leading ``---`` block of flat ``key: value`` lines.

    Returns:
        Field dict (possibly empty), or None when there is no block.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return None
    fields = {}
    for line in match.group(1).split("\n"):
        kv = _FIELD_RE.match(line)
        if kv:
            fields[kv.group(1)] = kv.group(2).strip()
    return fields


def check_frontmatter_preservation(rule: Rule, view: EditView, prior: str | None) -> list[Violation]:
    if not rule.locked_fields:
        return []

    removed_message = (
        "YAML frontmatter was removed entirely"
        if view.is_full_write
        else "YAML frontmatter was removed in edit"
    )
    violations = []
    for old_text, new_text in _comparison_pairs(view, prior):
        old_fm = parse_simple_frontmatter(old_text)
        if old_fm is None:
            continue
        new_fm = parse_simple_frontmatter(new_text)
        if new_fm is None:
            violations.append(
                Violation(
                    check=CheckKind.FRONTMATTER_PRESERVATION.value,
                    tier=rule.tier,
                    message=removed_message,
                )
            )
            continue
        for name in rule.locked_fields:
            old_value = old_fm.get(name)
            new_value = new_fm.get(name)
            if old_value and old_value != new_value:
                violations.append(
                    Violation(
                        check=CheckKind.FRONTMATTER_PRESERVATION.value,
                        tier=rule.tier,
                        message=(
                            f"Locked field '{name}' changed: "
                            f'"{old_value}" -> "{new_value or "(removed)"}"'
                        ),
                    )
                )
    return violations


# ============================================================
# shebang_preservation
# ============================================================


def _first_line(text: str) -> str:
    return (text or "").split("\n", 1)[0].rstrip("\r")


def check_shebang_preservation(rule: Rule, view: EditView, prior: str | None) -> list[Violation]:
    violations = []
    for old_text, new_text in _comparison_pairs(view, prior):
        old_first = _first_line(old_text)
        if old_first.startswith("#!") and not _first_line(new_text).startswith("#!"):
            violations.append(
                Violation(
                    check=CheckKind.SHEBANG_PRESERVATION.value,
                    tier=rule.tier,
                    message=f'Shebang line removed: "{old_first}"',
                )
            )
    return violations
