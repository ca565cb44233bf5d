"""
Static security scan over the files an attempt changed, run after preflight.

Critical findings block the attempt:
    - hardcoded secrets (credential assignments, OpenAI/GitHub/AWS keys, private keys)
    - environment values written to responses or logs
    - row level security switched off

A route handler with no auth reference is only a warning, since auth may be
applied upstream. Findings carry a category and a path, never the matched text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import structlog

from orchestrator.services.config import Settings, get_settings

logger = structlog.get_logger()

CRITICAL = "critical"
WARN = "warn"

HARDCODED_SECRET_PATTERNS = (
    re.compile(
        r"""(?:api[_-]?key|apikey|secret|password|passwd|pwd|token|auth[_-]?token)\s*[=:]\s*['"`]([^'"`${\s]{8,})['"`]""",
        re.IGNORECASE,
    ),
    re.compile(r"sk-[A-Za-z0-9]{20,}"),
    re.compile(r"ghp_[A-Za-z0-9]{36,}"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"),
)

ENV_EXPOSURE_PATTERNS = (
    re.compile(r"process\.env\.[A-Z_][A-Z0-9_]*.*(?:res\.(?:json|send|end)|console\.log)"),
    re.compile(r"(?:res\.(?:json|send|end)|console\.log)\(.*process\.env\.[A-Z_][A-Z0-9_]*"),
    re.compile(r"JSON\.stringify\(\s*process\.env\s*\)"),
    re.compile(r"json\.dumps\(\s*(?:dict\()?os\.environ\b"),
)

RLS_DISABLED_PATTERNS = (
    re.compile(r"\.rls\s*=\s*false", re.IGNORECASE),
    re.compile(r"disable\s+row\s+level\s+security", re.IGNORECASE),
)

UNPROTECTED_ROUTE_PATTERN = re.compile(
    r"""(?:router|app)\.(?:get|post|put|patch|delete)\s*\(\s*['"`](/(?!health\b|ping\b|favicon)[^'"`]+)['"`]\s*,"""
    r"""\s*(?:async\s*)?\((?!.*(?:auth|guard|verify|protect|require|middleware))[^)]*\)\s*(?:=>|\{)""",
    re.IGNORECASE,
)

SCAN_EXTENSIONS = frozenset({".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".sql", ".py", ".env"})
SKIP_SUFFIXES = (".test.ts", ".test.js", ".spec.ts", ".spec.js", ".env.example", ".env.sample")

_MAX_SCAN_BYTES = 1_000_000


@dataclass
class Finding:
    severity: str
    category: str
    path: str


@dataclass
class SecurityReport:
    findings: list[Finding] = field(default_factory=list)
    files_scanned: int = 0

    @property
    def critical(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == CRITICAL]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == WARN]

    @property
    def blocked(self) -> bool:
        return bool(self.critical)

    def feedback(self) -> str:
        """One line per critical finding, for the next LLM prompt."""
        return "\n".join(f"- {f.category} in {f.path}" for f in self.critical)


def is_scannable(name: str) -> bool:
    if name.endswith(SKIP_SUFFIXES):
        return False
    if name == ".env" or name.startswith(".env."):
        return True
    return Path(name).suffix.lower() in SCAN_EXTENSIONS


def _matches(patterns: Iterable[re.Pattern], content: str) -> bool:
    return any(p.search(content) for p in patterns)


def scan_content(path: str, content: str) -> list[Finding]:
    findings: list[Finding] = []
    if _matches(HARDCODED_SECRET_PATTERNS, content):
        findings.append(Finding(CRITICAL, "hardcoded_secret", path))
    if _matches(ENV_EXPOSURE_PATTERNS, content):
        findings.append(Finding(CRITICAL, "exposed_env_var", path))
    if _matches(RLS_DISABLED_PATTERNS, content):
        findings.append(Finding(CRITICAL, "rls_disabled", path))
    if UNPROTECTED_ROUTE_PATTERN.search(content):
        findings.append(Finding(WARN, "endpoint_missing_auth", path))
    return findings


class SecurityScanner:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        return self.settings.security_scan_enabled

    def scan(self, workspace: str, files: Iterable[str]) -> SecurityReport:
        """Scan the given repo-relative files. Deleted, linked and binary files are ignored."""
        root = Path(workspace).resolve()
        report = SecurityReport()
        for rel in sorted(set(files)):
            if not is_scannable(Path(rel).name):
                continue
            path = root / rel
            if path.is_symlink() or not path.is_file():
                continue
            try:
                if path.stat().st_size > _MAX_SCAN_BYTES:
                    continue
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            report.files_scanned += 1
            report.findings.extend(scan_content(rel, content))

        for finding in report.findings:
            logger.info("Security finding", severity=finding.severity, category=finding.category, path=finding.path)
        logger.info(
            "Security scan complete",
            files=report.files_scanned,
            critical=len(report.critical),
            warnings=len(report.warnings),
        )
        return report
