"""
Heuristic summaries for code units.

Summaries come from the documentation already in the source, in order of
confidence: doc comments and docstrings (0.9), a comment in the first
lines (0.7), and finally a description built from the unit's kind and
name (0.5).  In ``hybrid`` mode low-confidence results, and optionally
exported units, are flagged for a model-written summary.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .models import Chunk
from .parser import has_export_keyword

logger = logging.getLogger(__name__)

_ECMASCRIPT = frozenset({"typescript", "tsx", "javascript", "jsx"})
_JSDOC = re.compile(r"/\*\*\s*\n(?:[^*]|\*(?!/))*\*/")
_PYDOC = re.compile(r'"{3}(.*?)"{3}|\'{3}(.*?)\'{3}', re.DOTALL)
_FIRST_COMMENT = re.compile(r"//\s*(.+)|#\s*(.+)")
_COMMENT_START = ("//", "/*", "*", "#")


@dataclass
class SummaryConfig:
    enabled: bool = True
    strategy: str = "heuristic"         # "heuristic" | "hybrid"
    min_confidence_threshold: float = 0.6
    prefer_ai_for_exported: bool = False


@dataclass
class CodeUnitSummary:
    summary: str
    generated_by: str                   # "docstring" | "comment" | "signature"
    confidence: float
    needs_ai_summary: bool = False


class CodeSummarizer:
    """
    Summarize chunks from their own documentation.

    Parameters
    ----------
    config:
        Strategy and thresholds; defaults to enabled heuristic mode.
    """

    def __init__(self, config: Optional[SummaryConfig] = None) -> None:
        self.config = config or SummaryConfig()

    def summarize(self, chunk: Chunk, file_content: Optional[str] = None) -> CodeUnitSummary:
        """
        Summarize *chunk*.

        Parameters
        ----------
        chunk:
            The code unit.
        file_content:
            Full file text; when given, the comment block directly above
            the chunk is considered part of its documentation.
        """
        if not self.config.enabled:
            return CodeUnitSummary(summary="", generated_by="signature", confidence=0.0)

        result = self.heuristic_summary(chunk, file_content)

        if self.config.strategy == "hybrid":
            if result.confidence < self.config.min_confidence_threshold:
                result.needs_ai_summary = True
            if self.config.prefer_ai_for_exported and self._is_exported(chunk):
                result.needs_ai_summary = True
        return result

    def heuristic_summary(self, chunk: Chunk, file_content: Optional[str] = None) -> CodeUnitSummary:
        source = chunk.source
        leading = _leading_comment(file_content, chunk.start_line) if file_content else ""
        text = f"{leading}\n{source}" if leading else source

        doc = extract_docstring(text, chunk.language or "")
        if doc:
            return CodeUnitSummary(summary=doc, generated_by="docstring", confidence=0.9)

        comment = _first_line_comment(text)
        if comment:
            return CodeUnitSummary(summary=comment, generated_by="comment", confidence=0.7)

        return CodeUnitSummary(
            summary=_from_signature(chunk), generated_by="signature", confidence=0.5,
        )

    @staticmethod
    def _is_exported(chunk: Chunk) -> bool:
        if chunk.is_exported:
            return True
        for line in chunk.source.split("\n"):
            stripped = line.strip()
            if not stripped or stripped.startswith(_COMMENT_START):
                continue
            return has_export_keyword(stripped)
        return False


# ---------------------------------------------------------------------------
# Extraction helpers
# ---------------------------------------------------------------------------

def extract_docstring(code: str, language: str) -> Optional[str]:
    """Return the doc comment or docstring of *code*, cleaned, or None."""
    if language in _ECMASCRIPT:
        m = _JSDOC.search(code)
        if m:
            return _clean_jsdoc(m.group(0)) or None

    if language == "python":
        m = _PYDOC.search(code)
        if m:
            body = m.group(1) if m.group(1) is not None else m.group(2)
            return body.strip() or None

    if language in ("go", "rust"):
        markers = ("//",) if language == "go" else ("///", "//!")
        comments: list[str] = []
        for line in code.split("\n"):
            stripped = line.strip()
            marker = next((mk for mk in markers if stripped.startswith(mk)), None)
            if marker:
                comments.append(stripped[len(marker):].strip())
            elif stripped:
                break
        if comments:
            return " ".join(c for c in comments if c) or None
    return None


def _clean_jsdoc(doc: str) -> str:
    doc = re.sub(r"/\*\*|\*/|\*", "", doc)
    return " ".join(line.strip() for line in doc.split("\n") if line.strip())


def _first_line_comment(code: str) -> Optional[str]:
    for line in code.split("\n")[:3]:
        m = _FIRST_COMMENT.search(line)
        if m:
            return (m.group(1) or m.group(2)).strip()
    return None


def _leading_comment(file_content: str, start_line: int) -> str:
    """Comment lines immediately above *start_line* (1-based)."""
    lines = file_content.split("\n")
    collected: list[str] = []
    idx = start_line - 2
    while 0 <= idx < len(lines):
        stripped = lines[idx].strip()
        if not stripped.startswith(_COMMENT_START) and not stripped.endswith("*/"):
            break
        collected.append(lines[idx])
        idx -= 1
    return "\n".join(reversed(collected))


def _from_signature(chunk: Chunk) -> str:
    name = chunk.name or "anonymous"
    if chunk.is_function:
        return f"Function {name}"
    if chunk.is_class:
        return f"Class {name}"
    return f"Code unit {name}"
