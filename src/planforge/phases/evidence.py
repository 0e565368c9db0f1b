"""Evidence files let a node prove it did its job without changing files."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from planforge.phases.setup import EVIDENCE_DIR
from planforge.util.coerce import as_list_str, as_optional_str

EVIDENCE_OUTCOMES: set[str] = {"completed", "no-changes-needed", "verified", "partial"}


@dataclass(slots=True)
class Evidence:
    summary: str
    outcome: str
    details: str | None = None
    files: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EvidenceCheck:
    present: bool
    evidence: Evidence | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.evidence is not None and not self.errors


def evidence_relpath(node_id: str) -> str:
    return f"{EVIDENCE_DIR}/{node_id}.json"


def evidence_path(worktree: Path, node_id: str) -> Path:
    return worktree / evidence_relpath(node_id)


def check_evidence(worktree: Path, node_id: str) -> EvidenceCheck:
    path = evidence_path(worktree, node_id)
    try:
        raw = json.loads(path.read_text(encoding="utf-8-sig"))
    except FileNotFoundError:
        return EvidenceCheck(present=False)
    except (OSError, UnicodeError, json.JSONDecodeError) as exc:
        return EvidenceCheck(present=True, errors=[f"unreadable evidence file: {exc}"])
    if not isinstance(raw, dict):
        return EvidenceCheck(present=True, errors=["evidence must be a JSON object"])

    errors: list[str] = []
    summary = raw.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        errors.append("summary must be a non-empty string")
    outcome = raw.get("outcome")
    if outcome not in EVIDENCE_OUTCOMES:
        errors.append(f"outcome must be one of {sorted(EVIDENCE_OUTCOMES)}")
    if errors:
        return EvidenceCheck(present=True, errors=errors)
    return EvidenceCheck(
        present=True,
        evidence=Evidence(
            summary=str(summary).strip(),
            outcome=str(outcome),
            details=as_optional_str(raw.get("details")),
            files=as_list_str(raw.get("files")),
        ),
    )
