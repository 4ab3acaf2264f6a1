"""Typed link proposals for a concept.

Candidates come from vector search (padded from the store when the index is
sparse); a structured completion picks a relation label and confidence for
each. Any failure yields an empty proposal list.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

import httpx

from conceptkb.exceptions import ConceptKBError
from conceptkb.llm.client import ModelClient
from conceptkb.retrieval.vector import VectorSearch
from conceptkb.storage.sqlite_store import SQLiteStore
from conceptkb.types import Concept, LinkProposal
from conceptkb.utils import escape_template_content

logger = logging.getLogger(__name__)

DEFAULT_RELATION_LABELS = [
    "belongs to",
    "references",
    "is a subset of",
    "builds on",
    "contradicts",
    "related to",
    "example of",
    "prerequisite for",
    "extends",
    "similar to",
    "part of",
    "contains",
    "inspired by",
    "opposes",
]

MIN_CONFIDENCE = 0.5
PREVIEW_CHARS = 500

SYSTEM_PROMPT = (
    "You are analyzing relationships between concepts in a knowledge graph. "
    "Propose meaningful, typed links."
)


def _preview(text: str | None) -> str:
    return escape_template_content((text or "")[:PREVIEW_CHARS])


def build_prompt(source: Concept, candidates: list[Concept], labels: list[str],
                 max_proposals: int) -> str:
    lines = [
        "Analyze the relationship between this concept and the candidate concepts below.",
        "",
        "SOURCE CONCEPT:",
        f"Title: {escape_template_content(source.title)}",
        f"Description: {escape_template_content(source.description) or 'None'}",
        f"Content Preview: {_preview(source.content)}",
        "",
        "CANDIDATE CONCEPTS:",
    ]
    for i, c in enumerate(candidates, 1):
        lines.append(f"{i}. ID: {c.id}")
        lines.append(f"   Title: {escape_template_content(c.title)}")
        lines.append(f"   Content Preview: {_preview(c.content)}")
    lines += [
        "",
        f"AVAILABLE LINK NAMES: {', '.join(labels)}",
        "",
        "For each candidate concept, determine:",
        "1. If there's a meaningful relationship (confidence 0.0-1.0)",
        "2. The most appropriate link name from the available list",
        "3. A brief reasoning",
        "",
        'Return a JSON object with a "proposals" array:',
        '{"proposals": [{"target_id": "concept-id", "forward_name": "link name", '
        '"confidence": 0.85, "reasoning": "Brief explanation"}]}',
        "",
        f"Only include proposals with confidence >= {MIN_CONFIDENCE}. "
        f"Limit to {max_proposals} proposals.",
    ]
    return "\n".join(lines)


class LinkProposer:
    def __init__(self, store: SQLiteStore, client: ModelClient, search: VectorSearch,
                 max_candidates: int = 20) -> None:
        self.store = store
        self.client = client
        self.search = search
        self.max_candidates = max_candidates

    def relation_labels(self) -> list[str]:
        labels = list(DEFAULT_RELATION_LABELS)
        labels += [n for n in self.store.list_link_names() if n not in labels]
        return labels

    async def candidates_for(self, source: Concept) -> list[Concept]:
        excluded = {source.id} | self.store.linked_target_ids(source.id)
        query_vector = self.search.index.get(source.id)
        hits = await self.search.find_similar(
            source.embedding_text(),
            limit=self.max_candidates,
            exclude_ids=excluded,
            query_vector=query_vector,
        )
        found = self.store.get_concepts([h.entity_id for h in hits])
        candidates = [found[h.entity_id] for h in hits if h.entity_id in found]
        if len(candidates) < self.max_candidates:
            padding = self.store.list_concepts(
                status="active",
                limit=self.max_candidates - len(candidates),
                exclude_ids=[*excluded, *(c.id for c in candidates)],
            )
            candidates.extend(padding)
        return candidates

    async def propose_links(self, entity_id: str, max_proposals: int = 5) -> list[LinkProposal]:
        source = self.store.get_concept(entity_id)
        if source is None:
            logger.warning("propose_links: concept %s not found", entity_id)
            return []
        try:
            candidates = await self.candidates_for(source)
            if not candidates:
                logger.info("no link candidates for %s", entity_id)
                return []
            prompt = build_prompt(source, candidates, self.relation_labels(), max_proposals)
            response = await self.client.complete_json(prompt, SYSTEM_PROMPT)
        except (ConceptKBError, httpx.HTTPError, sqlite3.Error) as exc:
            logger.error("link proposal failed for %s: %s", entity_id, exc)
            return []

        proposals = self._parse(source, candidates, response)
        proposals.sort(key=lambda p: p.confidence, reverse=True)
        proposals = proposals[:max_proposals]
        logger.info("proposed %d links for %s", len(proposals), entity_id)
        return proposals

    @staticmethod
    def _parse(source: Concept, candidates: list[Concept],
               response: dict[str, Any]) -> list[LinkProposal]:
        by_id = {c.id: c for c in candidates}
        raw = response.get("proposals")
        if not isinstance(raw, list):
            return []
        out: list[LinkProposal] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            target = by_id.get(str(item.get("target_id", "")))
            try:
                confidence = float(item.get("confidence", 0.0))
            except (TypeError, ValueError):
                continue
            label = str(item.get("forward_name") or "").strip()
            if target is None or confidence < MIN_CONFIDENCE or not label:
                continue
            out.append(LinkProposal(
                source_id=source.id,
                target_id=target.id,
                target_title=target.title,
                relation_label=label,
                confidence=confidence,
                reasoning=str(item.get("reasoning") or ""),
            ))
        return out
