"""Pattern-based threat extraction from generated threat-model documents.

extract() runs an ordered list of independent strategies over the whole
document. The first strategy that yields at least one candidate wins and the
rest are not tried, so the same content is never counted under two
interpretations. Strategies, most specific first:

  1. parse_marked_threats    — "Threat:" headers with Description:/Mitigation: markers
  2. parse_threat_sections   — "Threat:" headers with a free-form body
  3. parse_heading_sections  — any markdown heading except known non-threat ones
  4. parse_numbered_items    — numbered list items with a substantial body

Every strategy is a pure function ``str -> list[ThreatCandidate]`` returning
candidates in document order with whitespace trimmed. Candidates whose body
is empty after extraction are dropped.

extract_all() instead collects the output of every strategy; the orchestrator
uses it for the threats already present in a blob primary.
"""

from __future__ import annotations

import bisect
import re
from typing import Callable, Optional, Sequence

from threatmerge.constants import MIN_LIST_ITEM_BODY_CHARS, NON_THREAT_HEADINGS
from threatmerge.models.threat import ThreatCandidate
from threatmerge.utils.logger import get_logger

logger = get_logger(__name__)

Strategy = Callable[[str], list[ThreatCandidate]]

# ─── Patterns ─────────────────────────────────────────────────────────────────

# Markdown heading line: "## Title", "### Title ###".
_HEADING_RE = re.compile(r"^[ \t]*#{1,6}[ \t]+(?P<title>.+?)[ \t#]*$", re.M)

# "Threat:" header line, as a heading or as a bare/bold line:
# "## Threat: X", "Threat: X", "**Threat:** X", "**Threat: X**".
_THREAT_HEADER_RE = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?\*{0,2}Threat:\*{0,2}[ \t]*(?P<title>.*?)[ \t*]*$",
    re.M | re.I,
)

# The "**Source:** <name> (ID: <id>)" line a merge writes as the last line of
# an appended threat. Only that exact final line is provenance.
_SOURCE_TRAILER = r"^[ \t]*\*\*Source:\*\*[^\n]*\(ID:[^\n]*\)[ \t]*\s*\Z"

# Body carrying both sub-markers, optionally followed by the provenance line.
_MARKED_BODY_RE = re.compile(
    r"\*{0,2}Description:\*{0,2}[ \t]*(?P<description>.*?)\s*"
    r"\*{0,2}Mitigations?:\*{0,2}[ \t]*(?P<mitigation>.*?)\s*"
    r"(?:" + _SOURCE_TRAILER + r"|\Z)",
    re.S | re.M | re.I,
)

_MITIGATION_MARKER_RE = re.compile(r"\*{0,2}Mitigations?:\*{0,2}", re.I)
_DESCRIPTION_PREFIX_RE = re.compile(r"\A\s*\*{0,2}Description:\*{0,2}\s*", re.I)
_SOURCE_TRAILER_RE = re.compile(_SOURCE_TRAILER, re.M | re.I)

_NUMBERED_ITEM_RE = re.compile(r"^\d+[.)][ \t]+(?P<title>[^\n]+)$", re.M)

# "**Title**: rest of line" / "**Title** - rest" inside a numbered item.
_BOLD_LEAD_RE = re.compile(r"^\*\*(?P<title>.+?)\*\*[ \t]*[:\-–—]?[ \t]*(?P<rest>.*)$")


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _clean_title(raw: str) -> str:
    return raw.strip().strip("*_").strip().rstrip(":").strip()


def _boundaries(text: str, *patterns: re.Pattern[str]) -> list[int]:
    """Sorted start offsets of every line matched by any of patterns."""
    starts: set[int] = set()
    for pattern in patterns:
        starts.update(match.start() for match in pattern.finditer(text))
    return sorted(starts)


def _sections(
    text: str, header_re: re.Pattern[str], boundaries: list[int]
) -> list[tuple[str, str]]:
    """(raw title, body) for every header_re match; a body runs to the next boundary."""
    sections: list[tuple[str, str]] = []
    for match in header_re.finditer(text):
        index = bisect.bisect_right(boundaries, match.start())
        end = boundaries[index] if index < len(boundaries) else len(text)
        sections.append((match.group("title"), text[match.end():end].strip()))
    return sections


def _split_mitigation(body: str) -> tuple[str, str]:
    """Split a free-form body into (description, mitigation) at a Mitigation: marker."""
    body = _SOURCE_TRAILER_RE.sub("", body).strip()
    marker = _MITIGATION_MARKER_RE.search(body)
    if marker is None:
        description, mitigation = body, ""
    else:
        description, mitigation = body[:marker.start()], body[marker.end():]
    description = _DESCRIPTION_PREFIX_RE.sub("", description)
    return description.strip(), mitigation.strip()


def _candidate(title: str, description: str, mitigation: str) -> Optional[ThreatCandidate]:
    if not title or not (description or mitigation):
        return None
    return ThreatCandidate(title=title, description=description, mitigation=mitigation)


# ─── Strategies ───────────────────────────────────────────────────────────────


def parse_marked_threats(text: str) -> list[ThreatCandidate]:
    """Strategy 1: "Threat:" sections with explicit Description:/Mitigation: markers.

    Sections lacking either marker are ignored by this strategy.
    """
    boundaries = _boundaries(text, _HEADING_RE, _THREAT_HEADER_RE)
    candidates: list[ThreatCandidate] = []
    for raw_title, body in _sections(text, _THREAT_HEADER_RE, boundaries):
        match = _MARKED_BODY_RE.search(body)
        if match is None:
            continue
        candidate = _candidate(
            _clean_title(raw_title),
            match.group("description").strip(),
            match.group("mitigation").strip(),
        )
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def parse_threat_sections(text: str) -> list[ThreatCandidate]:
    """Strategy 2: "Threat:" sections with free-form bodies."""
    boundaries = _boundaries(text, _HEADING_RE, _THREAT_HEADER_RE)
    candidates: list[ThreatCandidate] = []
    for raw_title, body in _sections(text, _THREAT_HEADER_RE, boundaries):
        candidate = _candidate(_clean_title(raw_title), *_split_mitigation(body))
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def parse_heading_sections(text: str) -> list[ThreatCandidate]:
    """Strategy 3: every markdown heading section except Overview, Summary and the like."""
    boundaries = _boundaries(text, _HEADING_RE)
    candidates: list[ThreatCandidate] = []
    for raw_title, body in _sections(text, _HEADING_RE, boundaries):
        title = _clean_title(raw_title)
        if title.lower() in NON_THREAT_HEADINGS:
            continue
        candidate = _candidate(title, *_split_mitigation(body))
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def parse_numbered_items(text: str) -> list[ThreatCandidate]:
    """Strategy 4: numbered list items.

    Items whose body is shorter than MIN_LIST_ITEM_BODY_CHARS are rejected;
    short list entries are usually steps or references, not threats.
    """
    boundaries = _boundaries(text, _NUMBERED_ITEM_RE, _HEADING_RE)
    candidates: list[ThreatCandidate] = []
    for raw_title, body in _sections(text, _NUMBERED_ITEM_RE, boundaries):
        bold = _BOLD_LEAD_RE.match(raw_title.strip())
        if bold is None:
            title = _clean_title(raw_title)
        else:
            title = _clean_title(bold.group("title"))
            body = f"{bold.group('rest')}\n{body}".strip()
        if len(body) < MIN_LIST_ITEM_BODY_CHARS:
            continue
        candidate = _candidate(title, *_split_mitigation(body))
        if candidate is not None:
            candidates.append(candidate)
    return candidates


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    parse_marked_threats,
    parse_threat_sections,
    parse_heading_sections,
    parse_numbered_items,
)


# ─── Entry point ──────────────────────────────────────────────────────────────


def extract(
    document_text: Optional[str],
    strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
) -> list[ThreatCandidate]:
    """Parse a generated document into threat candidates.

    Returns the output of the first strategy that finds anything, or an
    empty list for an empty document or when no strategy matches.
    """
    if not document_text:
        return []

    for strategy in strategies:
        candidates = strategy(document_text)
        if candidates:
            logger.debug(
                "threats_extracted",
                strategy=strategy.__name__,
                count=len(candidates),
            )
            return candidates

    logger.debug("no_threats_extracted", document_length=len(document_text))
    return []


def extract_all(
    document_text: Optional[str],
    strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
) -> list[ThreatCandidate]:
    """Every candidate any strategy finds, deduplicated on (title, description).

    Used for the threats already in a blob primary. A document that mixes
    layouts (original headings plus merge-appended "Threat:" sections) would
    otherwise only report the sections of its most specific layout.
    """
    if not document_text:
        return []

    seen: set[tuple[str, str]] = set()
    candidates: list[ThreatCandidate] = []
    for strategy in strategies:
        for candidate in strategy(document_text):
            key = (candidate.title.lower(), candidate.description)
            if key not in seen:
                seen.add(key)
                candidates.append(candidate)
    return candidates
