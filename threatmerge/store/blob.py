"""BlobDocumentRepository — one generated threat-model document in a BlobStore.

A blob threat model is a family of keys under its id:

    subject:<id>:title          document title (required)
    subject:<id>:response       full generated document text (required, may be "")
    subject:<id>:threatCount    integer count of threats, as a string
    subject:<id>:mergeMetadata  JSON audit record of the last merge
    subject:<id>:generation     optimistic-concurrency token, bumped on every append

Threats appended here become a markdown section of the document. They have
no durable id; the document is the only record of them.

Each append is one conditional write of content, threat count and generation.
A merge as a whole is NOT transactional: a failure after some appends leaves
those appends in place and surfaces as PartialPersistenceError.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any, Optional

from redis.exceptions import RedisError

from threatmerge.constants import (
    BLOB_CONTENT_SUFFIX,
    BLOB_GENERATION_SUFFIX,
    BLOB_KEY_PREFIX,
    BLOB_MERGE_METADATA_SUFFIX,
    BLOB_THREAT_COUNT_SUFFIX,
    BLOB_TITLE_SUFFIX,
)
from threatmerge.errors import BackendError, ConcurrentModificationError, PartialPersistenceError
from threatmerge.models.threat import ModelKind, Threat, ThreatModel
from threatmerge.store.protocol import BlobStore
from threatmerge.utils.logger import get_logger

logger = get_logger(__name__)

# Exceptions a BlobStore implementation may raise for an I/O failure.
_BLOB_IO_ERRORS = (RedisError, OSError)


@dataclass(frozen=True)
class BlobKeys:
    """Key family of one blob document."""

    prefix: str
    model_id: str

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.model_id}:{suffix}"

    @property
    def title(self) -> str:
        return self._key(BLOB_TITLE_SUFFIX)

    @property
    def content(self) -> str:
        return self._key(BLOB_CONTENT_SUFFIX)

    @property
    def threat_count(self) -> str:
        return self._key(BLOB_THREAT_COUNT_SUFFIX)

    @property
    def merge_metadata(self) -> str:
        return self._key(BLOB_MERGE_METADATA_SUFFIX)

    @property
    def generation(self) -> str:
        return self._key(BLOB_GENERATION_SUFFIX)


def format_threat_section(threat: Threat) -> str:
    """Render a threat as the markdown section appended to a blob document.

    The layout is the one the extractor's marker strategy reads back, so a
    document re-loaded after a merge yields the appended threats again.
    """
    lines = [
        f"## Threat: {threat.title}",
        "",
        f"**Description:** {threat.description}",
        "",
        f"**Mitigation:** {threat.mitigation}",
    ]
    if threat.source_model_id or threat.source_model_name:
        lines += ["", f"**Source:** {threat.source_model_name} (ID: {threat.source_model_id})"]
    return "\n\n" + "\n".join(lines) + "\n"


def _parse_int(raw: Optional[str], *, key: str) -> int:
    if raw is None:
        return 0
    try:
        return int(raw)
    except ValueError:
        logger.warning("blob_key_not_an_integer", key=key, value=raw[:32])
        return 0


class BlobDocumentRepository:
    """Loads and mutates blob threat-model documents through a BlobStore."""

    def __init__(self, store: BlobStore, key_prefix: str = BLOB_KEY_PREFIX) -> None:
        self._store = store
        self._key_prefix = key_prefix

    def keys(self, model_id: str) -> BlobKeys:
        return BlobKeys(prefix=self._key_prefix, model_id=model_id)

    async def load(self, model_id: str) -> Optional[ThreatModel]:
        """Load a document, or None when its title or content key is absent.

        An empty-string document is present. Raises BackendError when the
        store cannot be read.
        """
        keys = self.keys(model_id)
        try:
            # Generation before content: a commit landing between the reads
            # leaves a stale generation, so the next append conflicts.
            raw_generation = await self._store.get(keys.generation)
            title = await self._store.get(keys.title)
            content = await self._store.get(keys.content)
            if title is None or content is None:
                return None
            raw_count = await self._store.get(keys.threat_count)
            raw_metadata = await self._store.get(keys.merge_metadata)
        except _BLOB_IO_ERRORS as exc:
            raise BackendError(f"Could not read blob model {model_id}: {exc}") from exc

        merge_metadata: Optional[dict[str, Any]] = None
        if raw_metadata:
            try:
                merge_metadata = json.loads(raw_metadata)
            except json.JSONDecodeError:
                logger.warning("blob_merge_metadata_unreadable", model_id=model_id)

        return ThreatModel(
            id=model_id,
            name=title,
            kind=ModelKind.BLOB,
            description=content,
            threat_count=_parse_int(raw_count, key=keys.threat_count),
            merge_metadata=merge_metadata,
            generation=_parse_int(raw_generation, key=keys.generation),
        )

    async def append_threat(self, model: ThreatModel, threat: Threat) -> ThreatModel:
        """Append threat to the document and increment its threat count.

        Content, threat count and the next generation are committed in one
        conditional write that only applies while the generation still holds
        the value ``model`` was loaded with. If another writer committed in
        between, nothing is written and ConcurrentModificationError is raised.
        Returns the model as it now stands in the store.
        """
        keys = self.keys(model.id)
        expected = str(model.generation) if model.generation > 0 else None
        next_generation = model.generation + 1

        section = format_threat_section(threat)
        if not model.description:
            section = section.lstrip("\n")
        content = model.description + section
        threat_count = model.threat_count + 1

        try:
            committed = await self._store.compare_and_set_many(
                keys.generation,
                expected,
                {
                    keys.content: content,
                    keys.threat_count: str(threat_count),
                    keys.generation: str(next_generation),
                },
            )
        except _BLOB_IO_ERRORS as exc:
            raise PartialPersistenceError(
                f"Append to blob model {model.id} failed: {exc}",
                primary_id=model.id,
            ) from exc
        if not committed:
            raise ConcurrentModificationError(
                f"Blob model {model.id} was modified by another writer during the merge",
                primary_id=model.id,
            )

        logger.debug(
            "blob_threat_appended",
            model_id=model.id,
            title=threat.title,
            threat_count=threat_count,
            generation=next_generation,
        )
        return replace(
            model,
            description=content,
            threat_count=threat_count,
            generation=next_generation,
        )

    async def write_merge_metadata(
        self, model: ThreatModel, merge_metadata: dict[str, Any]
    ) -> ThreatModel:
        keys = self.keys(model.id)
        try:
            await self._store.set(keys.merge_metadata, json.dumps(merge_metadata))
        except _BLOB_IO_ERRORS as exc:
            raise PartialPersistenceError(
                f"Could not write merge metadata of blob model {model.id}: {exc}",
                primary_id=model.id,
            ) from exc
        return replace(model, merge_metadata=merge_metadata)
