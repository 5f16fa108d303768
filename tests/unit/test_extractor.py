"""Unit tests for threatmerge.engine.extractor.

Each strategy is exercised against a fixture document written in its own
layout; extract() is checked for first-match-wins ordering; the section
format written by BlobDocumentRepository is checked to read back.
"""

from __future__ import annotations

import textwrap

from threatmerge.engine.extractor import (
    DEFAULT_STRATEGIES,
    extract,
    extract_all,
    parse_heading_sections,
    parse_marked_threats,
    parse_numbered_items,
    parse_threat_sections,
)
from threatmerge.models.threat import Threat, ThreatCandidate
from threatmerge.store.blob import format_threat_section

# ─── Fixture documents ────────────────────────────────────────────────────────

MARKED_DOC = textwrap.dedent(
    """\
    # Threat Model: Shop

    ## Threat: SQL Injection

    **Description:** Attacker injects SQL through the search box.

    **Mitigation:** Use parameterized queries.

    ## Threat: Session Fixation

    **Description:** Session id is not rotated at login.

    **Mitigation:** Rotate the session id after authentication.
    """
)

FREEFORM_DOC = textwrap.dedent(
    """\
    Threat: Cross-Site Scripting
    User input is echoed into pages without encoding.
    Mitigation: Encode output and set a CSP.

    Threat: Clickjacking
    Pages can be framed by other origins.
    """
)

HEADING_DOC = textwrap.dedent(
    """\
    # Payment Service

    ## Overview
    This document covers the payment service.

    ## Credential Stuffing
    Attackers replay leaked passwords against the login endpoint.
    Mitigation: Rate limit logins and require MFA.

    ## Insecure Direct Object Reference
    Invoice ids are sequential and not authorization-checked.

    ## Summary
    Two threats identified.
    """
)

NUMBERED_DOC = textwrap.dedent(
    """\
    Identified threats:

    1. **Denial of Service**: Unbounded request bodies exhaust worker memory.
    2. Log Injection
       Newlines in usernames forge log entries.
    3. Short
    4. TLS
       ok
    """
)


# ─── Strategy 1: marked sections ──────────────────────────────────────────────


class TestParseMarkedThreats:
    def test_extracts_title_description_and_mitigation(self) -> None:
        assert parse_marked_threats(MARKED_DOC) == [
            ThreatCandidate(
                title="SQL Injection",
                description="Attacker injects SQL through the search box.",
                mitigation="Use parameterized queries.",
            ),
            ThreatCandidate(
                title="Session Fixation",
                description="Session id is not rotated at login.",
                mitigation="Rotate the session id after authentication.",
            ),
        ]

    def test_plain_markers_without_bold(self) -> None:
        doc = "Threat: Replay\nDescription: Tokens can be replayed.\nMitigation: Add a nonce.\n"
        assert parse_marked_threats(doc) == [
            ThreatCandidate("Replay", "Tokens can be replayed.", "Add a nonce.")
        ]

    def test_bold_threat_header(self) -> None:
        doc = "**Threat: Replay**\n**Description:** Tokens can be replayed.\n**Mitigation:** Add a nonce.\n"
        assert [c.title for c in parse_marked_threats(doc)] == ["Replay"]

    def test_sections_without_markers_are_ignored(self) -> None:
        assert parse_marked_threats(FREEFORM_DOC) == []

    def test_source_trailer_is_not_part_of_mitigation(self) -> None:
        doc = (
            "## Threat: Replay\n\n**Description:** Tokens can be replayed.\n\n"
            "**Mitigation:** Add a nonce.\n\n**Source:** Payments (ID: subj-7)\n"
        )
        [candidate] = parse_marked_threats(doc)
        assert candidate.mitigation == "Add a nonce."

    def test_source_line_inside_mitigation_is_kept(self) -> None:
        doc = (
            "## Threat: Replay\n\n**Description:** Tokens can be replayed.\n\n"
            "**Mitigation:** Add a nonce.\nSource: vendor advisory 2024-17\nRotate signing keys.\n\n"
            "**Source:** Payments (ID: subj-7)\n"
        )
        [candidate] = parse_marked_threats(doc)
        assert candidate.mitigation == (
            "Add a nonce.\nSource: vendor advisory 2024-17\nRotate signing keys."
        )

    def test_bold_source_without_id_is_mitigation_text(self) -> None:
        doc = (
            "## Threat: Replay\n\n**Description:** Tokens can be replayed.\n\n"
            "**Mitigation:** Add a nonce.\n**Source:** OWASP cheat sheet\n"
        )
        [candidate] = parse_marked_threats(doc)
        assert candidate.mitigation == "Add a nonce.\n**Source:** OWASP cheat sheet"


# ─── Strategy 2: free-form threat sections ───────────────────────────────────


class TestParseThreatSections:
    def test_splits_on_mitigation_marker(self) -> None:
        assert parse_threat_sections(FREEFORM_DOC) == [
            ThreatCandidate(
                title="Cross-Site Scripting",
                description="User input is echoed into pages without encoding.",
                mitigation="Encode output and set a CSP.",
            ),
            ThreatCandidate(
                title="Clickjacking",
                description="Pages can be framed by other origins.",
                mitigation="",
            ),
        ]

    def test_section_with_empty_body_is_dropped(self) -> None:
        doc = "Threat: Empty\n\nThreat: Real\nSomething bad happens here.\n"
        assert [c.title for c in parse_threat_sections(doc)] == ["Real"]

    def test_only_final_source_trailer_is_stripped(self) -> None:
        doc = (
            "Threat: Replay\nTokens can be replayed.\n"
            "Mitigation: Add a nonce.\nSource: vendor advisory\n\n"
            "**Source:** Payments (ID: subj-7)\n"
        )
        assert parse_threat_sections(doc) == [
            ThreatCandidate("Replay", "Tokens can be replayed.", "Add a nonce.\nSource: vendor advisory")
        ]


# ─── Strategy 3: generic heading sections ────────────────────────────────────


class TestParseHeadingSections:
    def test_skips_non_threat_headings_and_empty_bodies(self) -> None:
        candidates = parse_heading_sections(HEADING_DOC)
        assert [c.title for c in candidates] == [
            "Credential Stuffing",
            "Insecure Direct Object Reference",
        ]

    def test_mitigation_marker_split(self) -> None:
        candidate = parse_heading_sections(HEADING_DOC)[0]
        assert candidate.description == "Attackers replay leaked passwords against the login endpoint."
        assert candidate.mitigation == "Rate limit logins and require MFA."

    def test_excluded_headings_are_case_insensitive(self) -> None:
        doc = "## OVERVIEW\nNot a threat at all.\n## background\nAlso not a threat.\n"
        assert parse_heading_sections(doc) == []


# ─── Strategy 4: numbered list items ─────────────────────────────────────────


class TestParseNumberedItems:
    def test_extracts_items_with_substantial_bodies(self) -> None:
        assert parse_numbered_items(NUMBERED_DOC) == [
            ThreatCandidate(
                title="Denial of Service",
                description="Unbounded request bodies exhaust worker memory.",
                mitigation="",
            ),
            ThreatCandidate(
                title="Log Injection",
                description="Newlines in usernames forge log entries.",
                mitigation="",
            ),
        ]

    def test_indented_sub_steps_stay_in_parent_body(self) -> None:
        doc = "1. Token Theft\n   Stolen tokens grant full access:\n   1. phish\n   2. replay\n"
        [candidate] = parse_numbered_items(doc)
        assert candidate.title == "Token Theft"
        assert "1. phish" in candidate.description


# ─── extract() ────────────────────────────────────────────────────────────────


class TestExtract:
    def test_empty_and_none_yield_nothing(self) -> None:
        assert extract(None) == []
        assert extract("") == []

    def test_unstructured_text_yields_nothing(self) -> None:
        assert extract("Just a paragraph with no structure.") == []

    def test_first_matching_strategy_wins(self) -> None:
        # MARKED_DOC also has a "# Threat Model" heading; only strategy 1 output is used.
        assert extract(MARKED_DOC) == parse_marked_threats(MARKED_DOC)

    def test_falls_through_to_later_strategies(self) -> None:
        assert extract(FREEFORM_DOC) == parse_threat_sections(FREEFORM_DOC)
        assert extract(HEADING_DOC) == parse_heading_sections(HEADING_DOC)
        assert extract(NUMBERED_DOC) == parse_numbered_items(NUMBERED_DOC)

    def test_custom_strategy_list(self) -> None:
        assert extract(MARKED_DOC, strategies=[parse_numbered_items]) == []

    def test_default_strategy_order(self) -> None:
        assert DEFAULT_STRATEGIES == (
            parse_marked_threats,
            parse_threat_sections,
            parse_heading_sections,
            parse_numbered_items,
        )


class TestAppendedSectionRoundTrip:
    def test_appended_sections_read_back(self) -> None:
        threats = [
            Threat(
                title="Open Redirect",
                description="The next parameter is not validated.",
                mitigation="Allow-list redirect targets.",
                source_model_id="tm-9",
                source_model_name="Web App",
            ),
            Threat(title="Weak TLS", description="TLS 1.0 is enabled.", mitigation=""),
        ]
        document = ""
        for threat in threats:
            section = format_threat_section(threat)
            document += section.lstrip("\n") if not document else section

        assert extract(document) == [
            ThreatCandidate(
                "Open Redirect",
                "The next parameter is not validated.",
                "Allow-list redirect targets.",
            ),
            ThreatCandidate("Weak TLS", "TLS 1.0 is enabled.", ""),
        ]


class TestExtractAll:
    def test_collects_every_layout_in_a_mixed_document(self) -> None:
        document = HEADING_DOC + format_threat_section(
            Threat(title="SQL Injection", description="Search box is injectable.", mitigation="Bind params.")
        )
        assert [c.title for c in extract(document)] == ["SQL Injection"]

        titles = {c.title for c in extract_all(document)}
        assert {"SQL Injection", "Credential Stuffing", "Insecure Direct Object Reference"} <= titles

    def test_same_candidate_from_two_strategies_is_listed_once(self) -> None:
        titles = [c.title for c in extract_all(FREEFORM_DOC)]
        assert titles.count("Clickjacking") == 1

    def test_empty_document(self) -> None:
        assert extract_all("") == []
