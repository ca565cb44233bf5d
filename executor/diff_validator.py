"""
Diff validation — turns raw LLM output into a diff that is safe to hand to ``git apply``.

Pipeline:
    normalize_llm_output  →  NO_CHANGES sentinel or fence-stripped text
    sanitize_unified_diff →  reject commentary, cut to the first ``diff --git``
    validate_unified_diff →  structural checks (headers, hunks, size cap)
    sanity_check_diff     →  checks against the attempt workspace and the prompt
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

NO_CHANGES = "NO_CHANGES"

_COMMENTARY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^Here's",
        r"^Here is",
        r"^Sure",
        r"^I'll",
        r"^Let me",
        r"^I've",
        r"^I have",
        r"^This (diff|patch|change)",
        r"^The (diff|patch|change)",
        r"^Below is",
        r"^Above is",
    )
]

_DIFF_LINE_PREFIXES = ("diff --git ", "---", "+++", "@@", "+", "-", " ", "\\")
# git extended header lines that may appear between "diff --git" and "---"
_EXTENDED_HEADERS = (
    "index ", "new file mode", "deleted file mode", "old mode", "new mode",
    "similarity index", "rename from", "rename to", "copy from", "copy to",
    "dissimilarity index", "Binary files",
)

DELETION_KEYWORDS = (
    "delete", "remove", "drop", "eliminate", "get rid of", "take out", "rm", "unlink",
)

_APPLY_FAILED_RES = (
    re.compile(r"error: patch failed: ([^:\n]+):\d+"),
    re.compile(r"error: ([^:\n]+): patch does not apply"),
    re.compile(r"error: ([^:\n]+): already exists in (?:working directory|index)"),
    re.compile(r"error: ([^:\n]+): does not exist in index"),
)


@dataclass
class ValidationResult:
    ok: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class DiffFileBlock:
    old_path: Optional[str]
    new_path: Optional[str]
    is_new_file: bool = False
    is_deleted_file: bool = False

    @property
    def path(self) -> str:
        return self.new_path or self.old_path or "unknown"


def _is_commentary(line: str) -> bool:
    return any(p.match(line) for p in _COMMENTARY_PATTERNS)


def normalize_llm_output(raw: str) -> str:
    """Trim the output and strip a fence wrapped around the whole answer.

    Returns ``NO_CHANGES`` when that is the entire answer.
    """
    text = raw.strip()
    lines = text.split("\n")
    if len(lines) >= 2 and lines[0].startswith("```") and lines[-1].strip() == "```":
        text = "\n".join(lines[1:-1]).strip()
    if text == NO_CHANGES:
        return NO_CHANGES
    return text


def sanitize_unified_diff(raw: str) -> Optional[str]:
    """Cut ``raw`` down to the diff, or return None when it carries prose or fences."""
    for line in raw.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("diff --git "):
            break
        if _is_commentary(stripped):
            return None

    index = raw.find("diff --git ")
    if index == -1:
        return None
    result = raw[index:].strip()

    if "```" in result:
        lines = result.split("\n")
        if lines[-1].strip() != "```":
            return None
        result = "\n".join(lines[:-1]).strip()

    for line in result.split("\n"):
        stripped = line.strip()
        if stripped.startswith("```"):
            return None
        if not stripped or line.startswith(_DIFF_LINE_PREFIXES) or line.startswith(_EXTENDED_HEADERS):
            continue
        if _is_commentary(stripped):
            return None

    return result + "\n"


def validate_unified_diff(content: str, max_lines: int = 5000) -> ValidationResult:
    """Structural validation of a sanitized diff."""
    lines = content.split("\n")
    if lines and lines[-1] == "":
        lines = lines[:-1]

    if len(lines) > max_lines:
        return ValidationResult(False, [f"Diff exceeds maximum size: {len(lines)} lines > {max_lines} lines"])
    if len(lines) < 3:
        return ValidationResult(False, ["Diff is too short to be valid"])

    first = next((i for i, line in enumerate(lines) if line.startswith("diff --git ")), None)
    if first is None:
        return ValidationResult(False, ["Missing unified diff header (diff --git)"])
    if any(line.strip() for line in lines[:first]):
        return ValidationResult(False, ["Diff contains content before the first diff --git header"])

    errors: list[str] = []
    blocks: list[dict] = []
    for number, line in enumerate(lines, start=1):
        if line.startswith("diff --git "):
            match = re.match(r"^diff --git a/(.+) b/(.+)$", line)
            blocks.append(
                {"file": match.group(1) if match else "unknown", "line": number, "minus": False, "plus": False}
            )
        elif blocks and line.startswith("---"):
            blocks[-1]["minus"] = True
        elif blocks and line.startswith("+++"):
            blocks[-1]["plus"] = True

    for block in blocks:
        if not block["minus"]:
            errors.append(f"File block '{block['file']}' (line {block['line']}) is missing --- header")
        if not block["plus"]:
            errors.append(f"File block '{block['file']}' (line {block['line']}) is missing +++ header")

    if "```" in content:
        errors.append("Diff contains code blocks or markdown formatting")
    if not any(line.startswith("@@") for line in lines):
        errors.append("Missing hunk markers (@@)")
    if not content.endswith("\n"):
        errors.append("Diff must end with newline")

    in_hunk = False
    for number, line in enumerate(lines, start=1):
        if line.startswith("@@"):
            in_hunk = True
            continue
        if line.startswith(("diff --git ", "--- ", "+++ ")):
            in_hunk = False
            continue
        if in_hunk and line and line[0] not in "+- \\":
            errors.append(f"Invalid line in hunk at line {number}: {line[:60]!r}")
            break

    return ValidationResult(not errors, errors)


def _strip_prefix(path: str) -> Optional[str]:
    path = path.strip().split("\t")[0]
    if path == "/dev/null":
        return None
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def parse_diff_file_blocks(content: str) -> list[DiffFileBlock]:
    blocks: list[DiffFileBlock] = []
    for line in content.split("\n"):
        if line.startswith("diff --git "):
            match = re.match(r"^diff --git a/(.+) b/(.+)$", line)
            old, new = (match.group(1), match.group(2)) if match else (None, None)
            blocks.append(DiffFileBlock(old_path=old, new_path=new))
        elif not blocks:
            continue
        elif line.startswith("new file mode"):
            blocks[-1].is_new_file = True
        elif line.startswith("deleted file mode"):
            blocks[-1].is_deleted_file = True
        elif line.startswith("--- "):
            old = _strip_prefix(line[4:])
            if old is None:
                blocks[-1].is_new_file = True
            else:
                blocks[-1].old_path = old
        elif line.startswith("+++ "):
            new = _strip_prefix(line[4:])
            if new is None:
                blocks[-1].is_deleted_file = True
                blocks[-1].new_path = None
            else:
                blocks[-1].new_path = new
    return blocks


def _prompt_allows_deletion(prompt: str) -> bool:
    lowered = prompt.lower()
    return any(re.search(rf"\b{re.escape(k)}\b", lowered) for k in DELETION_KEYWORDS)


def sanity_check_diff(content: str, workspace: str, prompt: str) -> ValidationResult:
    """Reject diffs whose file operations contradict the workspace or the prompt."""
    root = Path(workspace)
    errors: list[str] = []
    for block in parse_diff_file_blocks(content):
        if block.is_new_file:
            if block.new_path and (root / block.new_path).exists():
                errors.append(f"Diff creates '{block.new_path}' but the file already exists")
        elif block.is_deleted_file:
            target = block.old_path or block.path
            if not (root / target).exists():
                errors.append(f"Diff deletes '{target}' but the file does not exist")
            elif not _prompt_allows_deletion(prompt):
                errors.append(f"Diff deletes '{target}' but the prompt does not ask for a deletion")
    return ValidationResult(not errors, errors)


def extract_failed_files(stderr: str) -> list[str]:
    """File paths named in ``git apply`` error output, in order of appearance."""
    found: list[str] = []
    for line in stderr.splitlines():
        for pattern in _APPLY_FAILED_RES:
            match = pattern.search(line)
            if match:
                path = match.group(1).strip()
                if path not in found:
                    found.append(path)
                break
    return found
