"""
Context Builder — selects a bounded, relevant subset of repository files for a prompt.

Selection:
    1. Rank source files by how often the prompt's significant words appear in them
    2. Pull in files those ranked files import with a relative path (one hop)
    3. Nothing matched? Fall back to entry-point heuristics:
       root entry files, then conventional locations inside apps/* and packages/*,
       and only if both tiers are empty, the README / package.json
    4. Add files in that order until MAX_CONTEXT_SIZE bytes; the file that crosses
       the cap is cut at the cap and ``truncated`` is set

The result is ordered by path so the same repository and prompt always
produce the same context.
"""

from __future__ import annotations

import fnmatch
import os
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog

from orchestrator.services.config import Settings, get_settings

logger = structlog.get_logger()

MAX_KEYWORDS = 5
_MAX_SCAN_BYTES = 1_000_000
_BINARY_SNIFF_BYTES = 8192

_STOPWORDS = frozenset(
    {
        "the", "this", "that", "with", "from", "for", "and", "or", "into", "when", "then",
        "them", "they", "there", "their", "what", "which", "should", "would", "could", "make",
        "please", "some", "have", "will", "also", "than", "just", "only", "each", "every",
        "about", "after", "before", "where", "while", "file", "files", "code", "change",
    }
)

SOURCE_EXTENSIONS = frozenset(
    {
        ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".vue", ".svelte",
        ".py", ".go", ".rs", ".java", ".kt", ".rb", ".php", ".cs", ".swift",
        ".c", ".h", ".cpp", ".hpp", ".css", ".scss", ".html", ".json",
        ".md", ".yml", ".yaml", ".toml", ".sql", ".sh",
    }
)

ROOT_ENTRY_POINTS = (
    "index.js", "index.ts", "main.js", "main.ts", "app.js", "app.ts",
    "src/index.js", "src/index.ts", "src/main.js", "src/main.ts",
)

SUBPROJECT_ROOTS = ("apps", "packages")

SUBPROJECT_ENTRY_POINTS = (
    "src/App.tsx", "src/App.jsx", "src/App.ts", "src/App.js",
    "src/main.tsx", "src/main.jsx", "src/main.ts", "src/main.js",
    "index.html", "package.json", "vite.config.ts", "vite.config.js",
)

LAST_RESORT_FILES = ("README.md", "package.json", "readme.md", "README", "README.txt")

_IMPORT_SUFFIXES = ("", ".js", ".ts", ".jsx", ".tsx", ".py", "/index.js", "/index.ts")
_JS_IMPORT_RE = re.compile(r"""import\s+(?:[^'"]*?\s+from\s+)?['"]([^'"]+)['"]""")
_JS_REQUIRE_RE = re.compile(r"""require\(\s*['"]([^'"]+)['"]\s*\)""")
_PY_RELATIVE_IMPORT_RE = re.compile(r"^\s*from\s+(\.+)([\w.]*)\s+import\b", re.MULTILINE)


@dataclass
class ProjectContext:
    files: dict[str, str] = field(default_factory=dict)
    total_size: int = 0
    truncated: bool = False
    repo_path: str = ""
    prompt: str = ""
    keywords: list[str] = field(default_factory=list)
    used_fallback: bool = False


def extract_keywords(prompt: str) -> list[str]:
    """Significant prompt words: lowercase, 4+ letters, no stopwords, first 5 distinct."""
    keywords: list[str] = []
    for word in re.findall(r"\b[a-z]{4,}\b", prompt.lower()):
        if word in _STOPWORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) == MAX_KEYWORDS:
            break
    return keywords


def is_repo_file(root: Path, rel: str) -> bool:
    """A regular file inside the repository. Links are never followed, in or out."""
    path = root / rel
    if path.is_symlink() or not path.is_file():
        return False
    return path.resolve().is_relative_to(root.resolve())


def _read_text(path: Path) -> Optional[str]:
    """File contents, or None for binary/unreadable files."""
    try:
        with path.open("rb") as fh:
            head = fh.read(_BINARY_SNIFF_BYTES)
            if b"\0" in head:
                return None
            data = head + fh.read()
    except OSError:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


class ContextBuilder:
    """Builds the file context that grounds each LLM call."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.max_size = self.settings.max_context_size
        self.skip_patterns = [
            p.strip() for p in self.settings.context_skip_patterns.split(",") if p.strip()
        ]

    def build_context(self, repo_root: str, prompt: str) -> ProjectContext:
        root = Path(repo_root)
        keywords = extract_keywords(prompt)
        context = ProjectContext(repo_path=str(root), prompt=prompt, keywords=keywords)

        candidates = self._with_imports(root, self.rank_files(root, keywords))
        if not candidates:
            candidates = self.fallback_files(root)
            context.used_fallback = bool(candidates)

        self._fill(root, candidates, context)
        logger.info(
            "Context built",
            repo=str(root),
            keywords=keywords,
            files=len(context.files),
            total_size=context.total_size,
            truncated=context.truncated,
            fallback=context.used_fallback,
        )
        return context

    # ── Ranking ───────────────────────────────────────────────────

    def _is_skipped(self, name: str) -> bool:
        for pattern in self.skip_patterns:
            if "*" in pattern or "?" in pattern:
                if fnmatch.fnmatch(name, pattern):
                    return True
            elif name == pattern:
                return True
        return False

    def iter_source_files(self, root: Path) -> list[str]:
        """Repo-relative POSIX paths of candidate source files, sorted."""
        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not self._is_skipped(d))
            for name in filenames:
                if self._is_skipped(name):
                    continue
                if Path(name).suffix.lower() not in SOURCE_EXTENSIONS:
                    continue
                rel = Path(dirpath, name).relative_to(root).as_posix()
                if is_repo_file(root, rel):
                    found.append(rel)
        return sorted(found)

    def rank_files(self, root: Path, keywords: list[str]) -> list[str]:
        """Files with at least one keyword hit, most hits first, ties by path."""
        if not keywords:
            return []
        patterns = [re.compile(re.escape(k), re.IGNORECASE) for k in keywords]
        scored: list[tuple[int, str]] = []
        for rel in self.iter_source_files(root):
            path = root / rel
            try:
                if path.stat().st_size > _MAX_SCAN_BYTES:
                    continue
            except OSError:
                continue
            text = _read_text(path)
            if text is None:
                continue
            score = sum(len(p.findall(text)) for p in patterns)
            if score:
                scored.append((score, rel))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [rel for _, rel in scored]

    # ── Imports (one hop) ─────────────────────────────────────────

    def _with_imports(self, root: Path, ranked: list[str]) -> list[str]:
        ordered: list[str] = []
        seen: set[str] = set()
        for rel in ranked:
            if rel not in seen:
                ordered.append(rel)
                seen.add(rel)
            text = _read_text(root / rel)
            if text is None:
                continue
            for imported in self.resolve_imports(root, rel, text):
                if imported not in seen:
                    ordered.append(imported)
                    seen.add(imported)
        return ordered

    def resolve_imports(self, root: Path, rel: str, text: str) -> list[str]:
        suffix = posixpath.splitext(rel)[1]
        specs: list[str] = []
        if suffix in (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"):
            specs = _JS_IMPORT_RE.findall(text) + _JS_REQUIRE_RE.findall(text)
        elif suffix == ".py":
            for dots, module in _PY_RELATIVE_IMPORT_RE.findall(text):
                up = "../" * (len(dots) - 1)
                specs.append("./" + up + module.replace(".", "/") if module else "./" + up)

        resolved: list[str] = []
        base = posixpath.dirname(rel)
        for spec in specs:
            if not spec.startswith("."):
                continue  # package import, not a repo file
            target = posixpath.normpath(posixpath.join(base, spec))
            if target.startswith(".."):
                continue
            for ext in _IMPORT_SUFFIXES:
                candidate = target + ext
                if is_repo_file(root, candidate) and not self._is_skipped(posixpath.basename(candidate)):
                    resolved.append(candidate)
                    break
        return resolved

    # ── Fallback tiers ────────────────────────────────────────────

    def fallback_files(self, root: Path) -> list[str]:
        found: list[str] = [p for p in ROOT_ENTRY_POINTS if is_repo_file(root, p)]

        for container in SUBPROJECT_ROOTS:
            container_path = root / container
            if not container_path.is_dir():
                continue
            for app in sorted(p.name for p in container_path.iterdir() if p.is_dir()):
                for entry in SUBPROJECT_ENTRY_POINTS:
                    rel = f"{container}/{app}/{entry}"
                    if is_repo_file(root, rel):
                        found.append(rel)

        if not found:
            found = [p for p in LAST_RESORT_FILES if is_repo_file(root, p)]
        return found

    # ── Byte cap ──────────────────────────────────────────────────

    def _fill(self, root: Path, candidates: list[str], context: ProjectContext) -> None:
        selected: dict[str, str] = {}
        total = 0
        for rel in candidates:
            text = _read_text(root / rel)
            if text is None:
                continue
            encoded = text.encode("utf-8")
            if total + len(encoded) > self.max_size:
                remaining = self.max_size - total
                if remaining > 0:
                    cut = encoded[:remaining].decode("utf-8", errors="ignore")
                    selected[rel] = cut
                    total += len(cut.encode("utf-8"))
                context.truncated = True
                break
            selected[rel] = text
            total += len(encoded)

        context.files = dict(sorted(selected.items()))
        context.total_size = total


def format_context(context: ProjectContext) -> str:
    """Render files as markdown sections for the LLM prompt."""
    return "\n\n".join(f"### {path}\n```\n{content}\n```" for path, content in context.files.items())
