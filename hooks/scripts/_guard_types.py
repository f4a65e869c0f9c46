#!/usr/bin/env python3
"""Shared data types for the Document Guard hook.

Everything here is immutable and free of I/O so that checks, the
dispatcher and the decision renderer can pass values around without
touching the filesystem:

- Tier: violation severity (critical > high > medium > low)
- CheckKind: the closed set of checks a rule may declare
- Rule: one path rule loaded from config
- TextEdit / EditView: normalized view of a proposed mutation
- Violation: one policy finding
- SemanticSettings / Toggles: per-evaluation switches
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Tier(str, Enum):
    """Violation severity. Higher rank wins when violations are merged."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @property
    def requires_approval(self) -> bool:
        """Critical and high tiers block unless an override is present."""
        return self in (Tier.CRITICAL, Tier.HIGH)

    @classmethod
    def parse(cls, value: Any, default: "Tier | None" = None) -> "Tier":
        """Parse a config value into a Tier.

        Unknown or missing values fall back to ``default`` (LOW if not given),
        mirroring the lowest-priority treatment of unranked tiers.
        """
        if isinstance(value, Tier):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return default if default is not None else cls.LOW


_TIER_RANK = {
    Tier.CRITICAL: 4,
    Tier.HIGH: 3,
    Tier.MEDIUM: 2,
    Tier.LOW: 1,
}


class CheckKind(str, Enum):
    """Every check a rule can declare."""

    NO_WRITE_ALLOWED = "no_write_allowed"
    CREDENTIAL_SCAN = "credential_scan"
    KEY_DELETION_PROTECTION = "key_deletion_protection"
    SECTION_PRESERVATION = "section_preservation"
    HEADING_STRUCTURE = "heading_structure"
    FRONTMATTER_PRESERVATION = "frontmatter_preservation"
    SHEBANG_PRESERVATION = "shebang_preservation"
    SEMANTIC_RELEVANCE = "semantic_relevance"

    @classmethod
    def lookup(cls, value: Any) -> "CheckKind | None":
        """Return the CheckKind for a config string, or None if unknown."""
        try:
            return cls(value)
        except ValueError:
            return None


STRUCTURAL_CHECKS = frozenset(
    {
        CheckKind.KEY_DELETION_PROTECTION,
        CheckKind.SECTION_PRESERVATION,
        CheckKind.HEADING_STRUCTURE,
        CheckKind.FRONTMATTER_PRESERVATION,
        CheckKind.SHEBANG_PRESERVATION,
    }
)
"""Checks gated by the v1.structuralChecks toggle."""


@dataclass(frozen=True)
class Rule:
    """A path rule from config. Identity is ``name``.

    ``checks`` keeps unknown strings as-is so the dispatcher can report
    them; known names are stored as CheckKind members.
    """

    name: str
    pattern: str
    tier: Tier
    checks: tuple = ()
    message: str | None = None
    locked_fields: tuple[str, ...] = ()
    protected_sections: tuple[str, ...] | None = None
    purpose: str | None = None

    @classmethod
    def from_config(cls, entry: dict[str, Any]) -> "Rule":
        checks = []
        for name in entry.get("checks") or []:
            kind = CheckKind.lookup(name)
            checks.append(kind if kind is not None else str(name))

        protected = entry.get("protectedSections")
        return cls(
            name=str(entry.get("name") or entry.get("pattern", "")),
            pattern=str(entry.get("pattern", "")),
            tier=Tier.parse(entry.get("tier")),
            checks=tuple(checks),
            message=entry.get("message") or None,
            locked_fields=tuple(entry.get("lockedFields") or ()),
            protected_sections=tuple(protected) if protected else None,
            purpose=entry.get("purpose") or None,
        )


@dataclass(frozen=True)
class TextEdit:
    """One find/replace region of a partial edit."""

    old_text: str
    new_text: str


@dataclass(frozen=True)
class EditView:
    """Normalized proposed mutation.

    Exactly one variant is active: a full replacement carries
    ``full_content``; a partial edit carries ``edits``.
    """

    full_content: str | None = None
    edits: tuple[TextEdit, ...] = ()

    @classmethod
    def full(cls, content: str) -> "EditView":
        return cls(full_content=content or "")

    @classmethod
    def partial(cls, edits) -> "EditView":
        return cls(edits=tuple(edits))

    @property
    def is_full_write(self) -> bool:
        return self.full_content is not None

    def new_texts(self) -> list[str]:
        """Candidate fragments of proposed text."""
        if self.is_full_write:
            return [self.full_content]
        return [edit.new_text for edit in self.edits]


@dataclass(frozen=True)
class Violation:
    check: str
    tier: Tier
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"check": self.check, "tier": self.tier.value, "message": self.message}


@dataclass(frozen=True)
class SemanticSettings:
    """Settings for the local relevance oracle (Ollama)."""

    ollama_url: str = "http://localhost:11434"
    model: str = "qwen2.5:7b-instruct"
    timeout_ms: int = 5000
    min_content_length: int = 50


@dataclass(frozen=True)
class Toggles:
    """Per-evaluation snapshot of which check categories are enabled."""

    master_enabled: bool = False
    v1_enabled: bool = False
    credential_scan: bool = False
    structural_checks: bool = False
    v2_enabled: bool = False
    v2_settings: SemanticSettings = field(default_factory=SemanticSettings)

    @property
    def any_enabled(self) -> bool:
        return self.master_enabled and (self.v1_enabled or self.v2_enabled)
