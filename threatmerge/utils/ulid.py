"""ULID generation for threatmerge.

ULIDs are used as:
  - merge_id bound into the structlog context for one merge call
  - primary keys of rows created by the relational store
    (threat models, threats, safeguards)

26 characters, Crockford Base32, lexicographically sortable by creation time,
so rows inserted during one merge keep their insertion order when sorted by id.

Uses the `python-ulid` library — do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Example::

        threat_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(threat_id) == 26
    """
    return str(ULID())
