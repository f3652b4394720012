"""
Fuzzy full-text search with relevance scoring.

Candidates come from the QueryEngine (over-fetched by overfetch_factor x
limit), are scored per configured field, and the best field score is the
document score. Documents below min_score are dropped; the rest are sorted
by score descending (ties keep fetch order) and truncated to limit.

The engine never re-queries: if fewer than limit candidates qualify, the
result is simply shorter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..config import SearchConfig
from ..errors import ValidationError
from ..models import Document, Pagination
from ..values import UNDEFINED, get_path
from .engine import QueryEngine, result_metadata, to_document
from .text import HighlightSpan, highlight, relevance, render_text, tokenize

logger = logging.getLogger(__name__)


@dataclass
class SearchHit:
    """A scored search result.

    matches maps each field with a non-zero score to its highlight spans,
    or is None when highlighting is disabled.
    """

    document: Document
    score: float
    matches: Optional[Dict[str, List[HighlightSpan]]] = None


@dataclass
class SearchResult:
    results: List[SearchHit] = field(default_factory=list)
    pagination: Pagination = field(default_factory=lambda: Pagination(has_more=False))
    metadata: Optional[Dict[str, Any]] = None


class SearchEngine:
    """Tokenizes, fuzzy-matches, scores and highlights query results."""

    def __init__(self, query_engine: QueryEngine, config: Optional[SearchConfig] = None) -> None:
        self.query_engine = query_engine
        self.config = config or SearchConfig()

    async def full_text_search(
        self,
        collection: str,
        query: str,
        fields: Sequence[str],
        where: Optional[Sequence[Any]] = None,
        order_by: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        case_sensitive: bool = False,
        fuzzy_match: bool = True,
        highlight_matches: bool = True,
        include_metadata: bool = False,
    ) -> SearchResult:
        """Search the given fields of a collection.

        Args:
            collection: Collection name
            query: Free-text query
            fields: Field names to score
            where: [field, op, value] pre-filter clauses
            order_by: Sort clauses applied to the candidates
            limit: Maximum hits returned
            min_score: Relevance threshold (defaults to SearchConfig.min_score)
            case_sensitive: Disable case folding
            fuzzy_match: Allow bounded edit distance between tokens
            highlight_matches: Compute highlight spans per matched field
            include_metadata: Attach timestamp, total, params and the query tokens

        Returns:
            SearchResult with hits sorted by score
        """
        if not isinstance(query, str):
            raise ValidationError("Search query must be a string", field_name="query")
        fields = list(fields or [])
        if any(not isinstance(f, str) or not f for f in fields):
            raise ValidationError("Search fields must be field names", field_name="fields")
        min_score = self.config.min_score if min_score is None else min_score
        ratio = self.config.fuzzy_ratio

        spec = self.query_engine.build_spec(where, order_by, limit)
        limit = spec.limit if spec.limit is not None else self.query_engine.config.default_limit
        candidate_spec = spec.model_copy(update={"limit": limit * self.config.overfetch_factor})
        candidates = await self.query_engine.fetch(collection, candidate_spec.predicates())

        query_tokens = tokenize(query, case_sensitive)
        hits: List[SearchHit] = []

        for stored in candidates:
            doc = to_document(stored)
            best = 0.0
            matches: Dict[str, List[HighlightSpan]] = {}

            for name in fields:
                value = get_path(doc.fields, name)
                if value is UNDEFINED or value is None:
                    continue
                text = render_text(value)
                score = relevance(query_tokens, tokenize(text, case_sensitive), fuzzy_match, ratio)
                best = max(best, score)
                if highlight_matches and score > 0:
                    matches[name] = highlight(text, query_tokens, case_sensitive, fuzzy_match, ratio)

            if best >= min_score:
                hits.append(
                    SearchHit(
                        document=doc,
                        score=best,
                        matches=matches if highlight_matches else None,
                    )
                )

        # list.sort is stable, so equal scores keep fetch order
        hits.sort(key=lambda h: h.score, reverse=True)
        page = hits[:limit]

        logger.debug(
            "Full-text search executed",
            extra={
                "collection": collection,
                "query_tokens": len(query_tokens),
                "candidates": len(candidates),
                "qualifying": len(hits),
                "returned": len(page),
            },
        )
        metadata = None
        if include_metadata:
            params = {
                "query": query,
                "fields": fields,
                "where": where,
                "order_by": order_by,
                "limit": limit,
                "min_score": min_score,
                "case_sensitive": case_sensitive,
                "fuzzy_match": fuzzy_match,
                "highlight_matches": highlight_matches,
            }
            metadata = result_metadata(len(page), params, search_tokens=query_tokens)
        return SearchResult(
            results=page,
            pagination=Pagination(
                has_more=len(hits) > limit,
                last_id=page[-1].document.id if page else None,
            ),
            metadata=metadata,
        )
