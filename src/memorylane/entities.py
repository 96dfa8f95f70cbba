"""Entity resolution: raw name mentions to canonical Entity records.

Used at extraction time (find-or-create) and at query time (lookup only;
queries never create entities).
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any

from .constants import SLUG_MAX_LENGTH
from .entity_store import EntityStore
from .errors import (
    EntityNotFound,
    EntityResolutionFailed,
    EntitySlugCollision,
    InvalidInput,
    TypeMismatch,
)
from .models import Entity, EntityOccurrence, EntityType

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

# Query-time mention patterns
_CAPITALIZED = re.compile(r"\b[A-Z][a-z]+\b")
_QUOTED = re.compile(r'"([^"]+)"')
_KEYWORD_PHRASE = re.compile(r'\b(?:project|person)[\s:]+"?([^",.?!;\n]+)"?', re.IGNORECASE)

# Capitalized words that start sentences or questions, never names
_STOPWORDS = frozenset({
    "A", "An", "The", "I", "What", "When", "Where", "Which", "Who", "Why", "How",
    "Is", "Are", "Was", "Were", "Do", "Does", "Did", "Can", "Could", "Should",
    "Would", "Will", "My", "Our", "Your", "Please", "Tell", "Show", "Remind",
    "Any", "And", "Or", "But", "If", "In", "On", "At", "For", "With", "About",
})


def generate_slug(name: str) -> str:
    """URL-safe slug: lowercase, non-alphanumeric runs become one dash.

    Leading and trailing dashes are trimmed and the result is capped at
    100 characters. May return "" for names without ASCII alphanumerics.
    """
    slug = _NON_ALNUM.sub("-", name.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def _fallback_slug(name: str, entity_type: str) -> str:
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:8]
    return f"{entity_type}-{digest}"


def extract_entity_mentions(text: str) -> list[str]:
    """Candidate entity names in free text, deduplicated in order of appearance.

    Picks up capitalized words, double-quoted strings, and the phrase after
    a ``project``/``person`` keyword.
    """
    mentions: list[str] = []
    seen: set[str] = set()

    def add(candidate: str) -> None:
        candidate = candidate.strip()
        key = candidate.lower()
        if candidate and key not in seen:
            seen.add(key)
            mentions.append(candidate)

    for match in _QUOTED.finditer(text):
        add(match.group(1))
    for match in _KEYWORD_PHRASE.finditer(text):
        add(match.group(1))
    for match in _CAPITALIZED.finditer(text):
        if match.group(0) not in _STOPWORDS:
            add(match.group(0))
    return mentions


class EntityResolver:
    """Maps names to canonical entities, creating them when asked."""

    def __init__(self, store: EntityStore):
        self.store = store

    async def find_by_name(self, name: str, entity_type: EntityType | None = None) -> Entity | None:
        """Case-insensitive canonical-name match first, then alias match."""
        name = name.strip()
        if not name:
            return None
        entity = await self.store.find_by_canonical_name(name, entity_type)
        if entity is None:
            entity = await self.store.find_by_alias(name, entity_type)
        return entity

    async def find_or_create(
        self,
        entity_type: EntityType,
        raw_name: str,
        canonical_name: str | None = None,
    ) -> Entity:
        """Return the entity for ``raw_name``, creating it if unknown.

        A found entity gains ``raw_name`` as an alias. A slug collision with
        a different entity falls back to ``<slug>-<type>``; a collision from a
        racing insert triggers one fresh lookup and one retry.

        Raises:
            InvalidInput: If the name is blank
            EntityResolutionFailed: If creation still collides after the retry
        """
        raw_name = raw_name.strip()
        if not raw_name:
            raise InvalidInput("Entity name must not be blank")
        canonical = (canonical_name or "").strip() or raw_name

        for attempt in (1, 2):
            entity = await self._lookup(entity_type, raw_name, canonical)
            if entity is not None:
                return entity
            try:
                return await self._create(entity_type, raw_name, canonical)
            except EntitySlugCollision as e:
                logger.info(f"Slug collision on '{e.slug}' (attempt {attempt}), looking up again")

        raise EntityResolutionFailed(
            f"Could not find or create {entity_type} entity '{raw_name}'"
        )

    async def _lookup(self, entity_type: EntityType, raw_name: str, canonical: str) -> Entity | None:
        entity = await self.find_by_name(raw_name, entity_type)
        if entity is None and canonical.lower() != raw_name.lower():
            entity = await self.find_by_name(canonical, entity_type)
        if entity is not None:
            await self.add_alias(entity.id, raw_name)
            entity = await self.store.require(entity.id)
        return entity

    async def _create(self, entity_type: EntityType, raw_name: str, canonical: str) -> Entity:
        slug = generate_slug(canonical) or _fallback_slug(canonical, entity_type)
        if await self.store.get_by_slug(slug) is not None:
            slug = f"{slug[:SLUG_MAX_LENGTH - len(entity_type) - 1]}-{entity_type}"
        aliases = [raw_name] if raw_name.lower() != canonical.lower() else []
        entity = Entity(type=entity_type, canonical_name=canonical, slug=slug, aliases=aliases)
        await self.store.insert(entity)
        logger.info(f"Created {entity_type} entity '{canonical}' ({slug})")
        return entity

    async def add_alias(self, entity_id: str, alias: str) -> bool:
        """Add an alias unless it equals the canonical name or is already known."""
        alias = alias.strip()
        if not alias:
            return False
        entity = await self.store.require(entity_id)
        if entity.canonical_name.lower() == alias.lower():
            return False
        return await self.store.add_alias(entity_id, alias)

    async def merge(self, keep_id: str, merge_id: str) -> Entity:
        """Combine ``merge_id`` into ``keep_id`` and delete the merged entity.

        Aliases are unioned (the merged entity's canonical name becomes an
        alias), occurrences and memory references move to the kept entity.
        Nothing is mutated if validation fails.

        Raises:
            InvalidInput: If both ids are the same
            EntityNotFound: If either entity does not exist
            TypeMismatch: If the entities have different types
        """
        if keep_id == merge_id:
            raise InvalidInput("Cannot merge an entity into itself")
        keep = await self.store.get_by_id(keep_id)
        if keep is None:
            raise EntityNotFound(keep_id)
        merged = await self.store.get_by_id(merge_id)
        if merged is None:
            raise EntityNotFound(merge_id)
        if keep.type != merged.type:
            raise TypeMismatch(
                f"Cannot merge {merged.type} '{merged.canonical_name}' "
                f"into {keep.type} '{keep.canonical_name}'"
            )

        aliases = list(keep.aliases)
        seen = {a.lower() for a in aliases} | {keep.canonical_name.lower()}
        for alias in [merged.canonical_name, *merged.aliases]:
            if alias.lower() not in seen:
                seen.add(alias.lower())
                aliases.append(alias)

        combined = keep.model_copy(update={
            "aliases": aliases,
            "linked_contact_id": keep.linked_contact_id or merged.linked_contact_id,
            "linked_project_id": keep.linked_project_id or merged.linked_project_id,
            "metadata": {**merged.metadata, **keep.metadata},
        })
        return await self.store.merge(combined, merge_id)

    async def resolve_mentions(self, names: list[str]) -> list[Entity]:
        """Resolve names to existing entities, skipping unknown ones."""
        resolved: list[Entity] = []
        seen: set[str] = set()
        for name in names:
            entity = await self.find_by_name(name)
            if entity is not None and entity.id not in seen:
                seen.add(entity.id)
                resolved.append(entity)
        return resolved

    async def link_to_contact(self, entity_id: str, contact_id: str | None) -> Entity:
        return await self.store.update(entity_id, linked_contact_id=contact_id)

    async def link_to_project(self, entity_id: str, project_id: str | None) -> Entity:
        return await self.store.update(entity_id, linked_project_id=project_id)

    async def get_by_contact(self, contact_id: str) -> list[Entity]:
        return await self.store.get_by_contact(contact_id)

    async def get_by_project(self, project_id: str) -> list[Entity]:
        return await self.store.get_by_project(project_id)

    async def update_metadata(self, entity_id: str, metadata: dict[str, Any]) -> Entity:
        return await self.store.update(entity_id, metadata=metadata)

    async def search(self, term: str, entity_type: EntityType | None = None) -> list[Entity]:
        return await self.store.search(term, entity_type)

    async def track_occurrence(
        self, entity_id: str, memory_id: str, context: str | None = None
    ) -> bool:
        return await self.store.add_occurrence(entity_id, memory_id, context)

    async def get_occurrences(self, entity_id: str) -> list[EntityOccurrence]:
        return await self.store.occurrences(entity_id)

    async def entities_for_memory(self, memory_id: str) -> list[Entity]:
        return await self.store.entities_for_memory(memory_id)

    async def delete_with_occurrences(self, entity_id: str) -> None:
        """Delete an entity and every occurrence row pointing at it."""
        if not await self.store.delete(entity_id):
            raise EntityNotFound(entity_id)

    async def statistics(self) -> dict:
        return await self.store.statistics()
