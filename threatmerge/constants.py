"""Shared constants for threatmerge.

Thresholds, key layouts and defaults used across modules are defined here.
No magic numbers in other modules — import from here.
"""

# ─── Model identifiers ───────────────────────────────────────────────────────

# Prefix marking a model id as living in the blob backend. Stripped before the
# id is used to build blob keys. Anything without it is a relational id.
BLOB_MODEL_ID_PREFIX: str = "subj-"

# Key family root for blob documents: "<prefix>:<id>:<suffix>".
BLOB_KEY_PREFIX: str = "subject"

# Key suffixes of one blob document.
BLOB_TITLE_SUFFIX: str = "title"
BLOB_CONTENT_SUFFIX: str = "response"
BLOB_THREAT_COUNT_SUFFIX: str = "threatCount"
BLOB_MERGE_METADATA_SUFFIX: str = "mergeMetadata"
BLOB_GENERATION_SUFFIX: str = "generation"

# ─── Similarity thresholds ───────────────────────────────────────────────────

# Jaccard similarity of title token sets strictly above this is a duplicate.
TITLE_SIMILARITY_THRESHOLD: float = 0.7

# Jaccard similarity of description token sets strictly above this is a duplicate.
DESCRIPTION_SIMILARITY_THRESHOLD: float = 0.8

# Description tokens shorter than this are ignored (stop-word noise).
MIN_DESCRIPTION_TOKEN_LENGTH: int = 3

# ─── Extraction ──────────────────────────────────────────────────────────────

# Numbered-list items whose body is shorter than this are not threats.
MIN_LIST_ITEM_BODY_CHARS: int = 10

# Headings that never denote a threat section.
NON_THREAT_HEADINGS: frozenset[str] = frozenset({
    "overview",
    "introduction",
    "summary",
    "conclusion",
    "background",
})

# ─── Risk scoring ────────────────────────────────────────────────────────────

RISK_SCORE_DEFAULT: int = 50
RISK_SCORE_MIN: int = 1
RISK_SCORE_MAX: int = 100
RISK_SCORE_STEP: int = 5

# Defaults for relational threat rows when the source has no value.
DEFAULT_IMPACT: int = 3
DEFAULT_LIKELIHOOD: int = 3

# Effectiveness of a carried-over safeguard link when the source has none.
DEFAULT_SAFEGUARD_EFFECTIVENESS: int = 50

# ─── Relational model lifecycle ──────────────────────────────────────────────

# Status a relational primary is reset to after a merge (needs re-review).
STATUS_AFTER_MERGE: str = "Draft"
