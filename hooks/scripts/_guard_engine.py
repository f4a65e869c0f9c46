#!/usr/bin/env python3
"""Evaluation engine for the Document Guard.

Pipeline for one mutation:
1. Normalize the tool input into an EditView
2. Select every rule whose glob matches the project-relative path
3. Run the global credential scan and each rule's declared checks
4. Deduplicate violations by message (first seen wins)
5. Render a decision from the highest tier:
   - none            -> ALLOW
   - critical / high -> ALLOW_OVERRIDE_USED (override consumed) or BLOCK
   - medium          -> ALLOW_WITH_WARNING (context injected)
   - low             -> ALLOW (audit only)

Every failure path resolves to a definite decision, generally allow:
the guard never blocks an edit it could not evaluate unless a critical
or high violation was actually found.
"""

import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from _guard_audit import audit_log
from _guard_checks import (
    check_credential_scan,
    check_frontmatter_preservation,
    check_heading_structure,
    check_key_deletion,
    check_no_write_allowed,
    check_section_preservation,
    check_shebang_preservation,
)
from _guard_overrides import consume_override, has_override, now_ms
from _guard_rules import find_matching_rules, load_rules
from _guard_semantic import check_semantic_relevance
from _guard_types import STRUCTURAL_CHECKS, CheckKind, EditView, Rule, TextEdit, Tier, Toggles, Violation
from _guard_utils import (
    DEFAULT_MAX_VIOLATIONS_SHOWN,
    DEFAULT_OVERRIDE_TTL_SECONDS,
    EDIT_TOOLS,
    OVERRIDE_FILE_NAME,
    allow_response,
    block_response,
    context_response,
    emit_response,
    get_config_cache,
    get_override_file_path,
    get_settings,
    is_dry_run,
    is_within_project,
    log_guard,
    read_prior_content,
    resolve_toggles,
    to_absolute_path,
    to_relative_path,
    truncate_path,
)


# ============================================================
# Tool Input Normalization
# ============================================================


def extract_file_path(tool_name: str, tool_input: dict[str, Any]) -> str | None:
    if tool_name in ("Edit", "Write", "MultiEdit"):
        value = tool_input.get("file_path")
    elif tool_name in ("mcp__filesystem__edit_file", "mcp__filesystem__write_file"):
        value = tool_input.get("path")
    else:
        return None
    return value if isinstance(value, str) and value else None


def _edits_from(entries: Any, old_key: str, new_key: str) -> list[TextEdit]:
    edits = []
    for entry in entries if isinstance(entries, list) else []:
        if isinstance(entry, dict):
            edits.append(TextEdit(str(entry.get(old_key) or ""), str(entry.get(new_key) or "")))
    return edits


def build_edit_view(tool_name: str, tool_input: dict[str, Any]) -> EditView | None:
    """Normalize a tool payload. None for tools that are not evaluated."""
    if tool_name in ("Write", "mcp__filesystem__write_file"):
        return EditView.full(str(tool_input.get("content") or ""))
    if tool_name == "Edit":
        return EditView.partial(
            [TextEdit(str(tool_input.get("old_string") or ""), str(tool_input.get("new_string") or ""))]
        )
    if tool_name == "MultiEdit":
        return EditView.partial(_edits_from(tool_input.get("edits"), "old_string", "new_string"))
    if tool_name == "mcp__filesystem__edit_file":
        return EditView.partial(_edits_from(tool_input.get("edits"), "oldText", "newText"))
    return None


# ============================================================
# Check Dispatcher
# ============================================================


class _PriorContent:
    """Reads the on-disk file at most once per evaluation."""

    def __init__(self, absolute_path: Path):
        self._path = absolute_path
        self._loaded = False
        self._content: str | None = None

    def get(self) -> str | None:
        if not self._loaded:
            self._content = read_prior_content(self._path)
            self._loaded = True
        return self._content


def dedupe_violations(violations: list[Violation]) -> list[Violation]:
    seen = set()
    unique = []
    for violation in violations:
        if violation.message in seen:
            continue
        seen.add(violation.message)
        unique.append(violation)
    return unique


def _run_rule_check(
    kind: CheckKind,
    rule: Rule,
    view: EditView,
    prior: _PriorContent,
    relative_path: str,
    toggles: Toggles,
    semantic_client,
) -> list[Violation]:
    if kind is CheckKind.NO_WRITE_ALLOWED:
        # Hard block primitive: only the V1 master toggle gates it
        return check_no_write_allowed(rule, relative_path) if toggles.v1_enabled else []

    if kind in STRUCTURAL_CHECKS:
        if not toggles.structural_checks:
            return []
        # Partial edits carry their own old text; skip the disk read
        old = prior.get() if view.is_full_write else None
        if kind is CheckKind.KEY_DELETION_PROTECTION:
            return check_key_deletion(view, old)
        if kind is CheckKind.SECTION_PRESERVATION:
            return check_section_preservation(rule, view, old)
        if kind is CheckKind.HEADING_STRUCTURE:
            return check_heading_structure(rule, view, old)
        if kind is CheckKind.FRONTMATTER_PRESERVATION:
            return check_frontmatter_preservation(rule, view, old)
        if kind is CheckKind.SHEBANG_PRESERVATION:
            return check_shebang_preservation(rule, view, old)

    if kind is CheckKind.SEMANTIC_RELEVANCE:
        if not toggles.v2_enabled:
            return []
        return check_semantic_relevance(rule, view, toggles.v2_settings, client=semantic_client)

    if kind is CheckKind.CREDENTIAL_SCAN:
        # Global check; runs once per mutation from the general section
        return []

    raise AssertionError(f"unhandled check kind: {kind}")


def run_checks(
    config: dict[str, Any],
    rules: list[Rule],
    view: EditView,
    absolute_path: Path,
    relative_path: str,
    toggles: Toggles,
    semantic_client=None,
) -> list[Violation]:
    """Run the global and per-rule checks, returning deduplicated violations."""
    violations: list[Violation] = []

    if toggles.credential_scan:
        general = config.get("general") or []
        if any(isinstance(g, dict) and g.get("check") == CheckKind.CREDENTIAL_SCAN.value for g in general):
            violations.extend(check_credential_scan(config, view))

    prior = _PriorContent(absolute_path)
    for rule in rules:
        for check in rule.checks:
            if not isinstance(check, CheckKind):
                log_guard("WARN", f"Unknown check '{check}' in rule '{rule.name}' - skipped")
                continue
            violations.extend(
                _run_rule_check(check, rule, view, prior, relative_path, toggles, semantic_client)
            )

    return dedupe_violations(violations)


def highest_tier(violations: list[Violation]) -> Tier | None:
    if not violations:
        return None
    return max((v.tier for v in violations), key=lambda tier: tier.rank)


# ============================================================
# Decision Renderer
# ============================================================


class Outcome(str, Enum):
    ALLOW = "ALLOW"
    ALLOW_WITH_WARNING = "ALLOW_WITH_WARNING"
    ALLOW_OVERRIDE_USED = "ALLOW_OVERRIDE_USED"
    BLOCK = "BLOCK"


@dataclass
class Decision:
    outcome: Outcome
    response: dict[str, Any]
    tier: Tier | None = None
    violations: list[Violation] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)


def format_block_message(
    relative_path: str,
    violations: list[Violation],
    rules: list[Rule],
    config: dict[str, Any],
    now: int | None = None,
    override_file: Path | None = None,
) -> str:
    settings = get_settings(config)
    max_shown = settings.get("maxViolationsShown") or DEFAULT_MAX_VIOLATIONS_SHOWN
    ttl = settings.get("overrideTTL") or DEFAULT_OVERRIDE_TTL_SECONDS
    tier = highest_tier(violations) or Tier.HIGH
    override_file = override_file or get_override_file_path()
    expires = (now_ms() if now is None else now) + int(ttl * 1000)

    lines = [f"DOCUMENT GUARD [{tier.value.upper()}]: Edit blocked on {relative_path}", "", "Violations:"]
    for violation in violations[:max_shown]:
        lines.append(f"  - [{violation.check}] {violation.message}")
    if len(violations) > max_shown:
        lines.append(f"  ... and {len(violations) - max_shown} more")

    record = {"overrides": [{"file": relative_path, "reason": "User approved", "expires": expires}]}
    lines.extend(
        [
            "",
            f"Matched rules: {', '.join(rule.name for rule in rules)}",
            "",
            "To override: Ask the user for explicit approval, then write this file:",
            f"  Path: {override_file}",
            f"  Content: {json.dumps(record, separators=(',', ':'))}",
            f"Then retry the edit. The override expires in {ttl} seconds and is single-use.",
        ]
    )
    return "\n".join(lines)


def render_decision(
    relative_path: str,
    violations: list[Violation],
    rules: list[Rule],
    config: dict[str, Any],
    override_file: Path | None = None,
    now: int | None = None,
) -> Decision:
    """Map violations to an outcome, consulting overrides for critical/high."""
    if not violations:
        return Decision(Outcome.ALLOW, allow_response())

    tier = highest_tier(violations)
    name = Path(relative_path).name
    path_preview = truncate_path(relative_path)

    if tier.requires_approval:
        if has_override(relative_path, now=now, override_file=override_file):
            if is_dry_run():
                log_guard("DRY-RUN", f"Would consume override for {path_preview}")
            else:
                consume_override(relative_path, override_file=override_file)
            audit_log("override_used", relative_path, violations, rules)
            log_guard("OVERRIDE", f"Override used ({tier.value}): {path_preview}")
            summary = "; ".join(v.message for v in violations)
            return Decision(
                Outcome.ALLOW_OVERRIDE_USED,
                context_response(
                    f"DOCUMENT GUARD OVERRIDE USED on {name}: {summary}. "
                    "This override was approved by the user."
                ),
                tier,
                violations,
                rules,
            )

        audit_log("blocked", relative_path, violations, rules)
        log_guard("BLOCK", f"{len(violations)} violation(s) ({tier.value}): {path_preview}")
        message = format_block_message(relative_path, violations, rules, config, now=now, override_file=override_file)
        return Decision(Outcome.BLOCK, block_response(message), tier, violations, rules)

    if tier is Tier.MEDIUM:
        audit_log("warned", relative_path, violations, rules)
        log_guard("WARNED", f"{len(violations)} violation(s): {path_preview}")
        summary = "; ".join(f"[{v.check}] {v.message}" for v in violations)
        return Decision(
            Outcome.ALLOW_WITH_WARNING,
            context_response(f"Document Guard warning on {name}: {summary}"),
            tier,
            violations,
            rules,
        )

    audit_log("logged", relative_path, violations, rules)
    log_guard("INFO", f"{len(violations)} low-tier violation(s) logged: {path_preview}")
    return Decision(Outcome.ALLOW, allow_response(), tier, violations, rules)


# ============================================================
# Orchestration
# ============================================================


def evaluate_mutation(
    tool_name: str,
    tool_input: Any,
    config: dict[str, Any] | None = None,
    semantic_client=None,
) -> Decision:
    """Evaluate one mutation request end to end.

    Args:
        tool_name: Claude Code tool name (Write, Edit, MultiEdit, mcp...).
        tool_input: Tool payload.
        config: Config to evaluate against; loaded from disk when None.
        semantic_client: Optional httpx.Client for the relevance oracle.
    """
    if not isinstance(tool_name, str) or tool_name not in EDIT_TOOLS or not isinstance(tool_input, dict):
        return Decision(Outcome.ALLOW, allow_response())

    file_path = extract_file_path(tool_name, tool_input)
    if not file_path or "\x00" in file_path:
        return Decision(Outcome.ALLOW, allow_response())

    absolute_path = to_absolute_path(file_path)
    relative_path = to_relative_path(absolute_path)

    # The approval flow writes the override file itself
    if absolute_path == get_override_file_path() or relative_path.endswith(OVERRIDE_FILE_NAME):
        return Decision(Outcome.ALLOW, allow_response())

    if not is_within_project(absolute_path):
        return Decision(Outcome.ALLOW, allow_response())

    if config is None:
        config = get_config_cache().refresh()
    if not config:
        return Decision(Outcome.ALLOW, allow_response())

    toggles = resolve_toggles(config)
    if not toggles.any_enabled:
        return Decision(Outcome.ALLOW, allow_response())

    view = build_edit_view(tool_name, tool_input)
    if view is None:
        return Decision(Outcome.ALLOW, allow_response())

    rules = find_matching_rules(load_rules(config), relative_path)
    log_guard("INFO", f"{tool_name} check: {truncate_path(relative_path)} ({len(rules)} rule(s))")

    violations = run_checks(config, rules, view, absolute_path, relative_path, toggles, semantic_client)
    decision = render_decision(relative_path, violations, rules, config)

    if decision.outcome is Outcome.BLOCK and is_dry_run():
        log_guard("DRY-RUN", f"Would BLOCK {tool_name}: {truncate_path(relative_path)}")
        decision.response = allow_response()
    return decision


def run_document_guard_hook() -> None:
    """Read a PreToolUse event from stdin and print the decision."""
    try:
        input_data = json.load(sys.stdin)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        log_guard("WARN", f"Malformed hook input - allowing: {e}")
        emit_response(allow_response())
        return

    if not isinstance(input_data, dict):
        emit_response(allow_response())
        return

    decision = evaluate_mutation(input_data.get("tool_name", ""), input_data.get("tool_input"))
    emit_response(decision.response)
