# vendor_eval/agents/retriever.py
"""
Knowledge retriever.

Queries two Chroma indexes concurrently and merges them:
- primary:   chunked documents, searched by embedding (+ optional where filter)
- secondary: OCR / image-derived documents, searched by text; `merged_text` in
             metadata carries the OCR-enhanced body

Merge rules:
- primary fragments are kept, keyed by (file_name, chunk_index)
- a secondary document for a file missing from the primary results is added
- a secondary document with merged text at least 3x longer than the file's
  first primary fragment replaces all of that file's primary fragments
- result sorted by score desc, truncated to top_k

A failing index contributes nothing; retrieve() itself never raises.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from vendor_eval.config import cfg
from vendor_eval.models import KnowledgeContext, KnowledgeFragment
from vendor_eval.services import chroma_client
from vendor_eval.services.embeddings import embed_query, has_embedding_capability

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_TOP_K = 5
DEFAULT_TOP_K_PER_QUERY = 3
OCR_REPLACE_RATIO = 3
MIN_OCR_CONTENT_CHARS = 50
OCR_SOURCE_TYPE = "ocr-document"
COMPLIANCE_SOURCE_TYPE = "compliance-standard"
SHARED_CATEGORY = "shared"
EMPTY_SUMMARY = "No relevant compliance documents found."

PrimarySearch = Callable[[str, List[float], int, Optional[Dict[str, Any]]], List[Dict[str, Any]]]
SecondarySearch = Callable[[str, int], List[Dict[str, Any]]]


def _chroma_primary_search(query: str, embedding: List[float], top_k: int,
                           where: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    res = chroma_client.query_by_embedding(cfg.KNOWLEDGE_COLLECTION, embedding, top_k=top_k, where=where)
    return chroma_client.rows_from_result(res)


def _chroma_secondary_search(query: str, top_k: int) -> List[Dict[str, Any]]:
    res = chroma_client.query_by_text(cfg.OCR_COLLECTION, query, top_k=top_k)
    return chroma_client.rows_from_result(res)


def knowledge_backend_configured() -> bool:
    """Endpoint, credential (remote servers only) and embedding capability must all be present."""
    if cfg.CHROMA_HOST:
        has_endpoint, has_credential = True, bool(cfg.CHROMA_API_KEY)
    else:
        has_endpoint, has_credential = bool(cfg.CHROMA_PATH), True
    return has_endpoint and has_credential and has_embedding_capability()


def build_filter(source_type: Optional[str] = None, category: Optional[str] = None) -> Optional[Dict[str, Any]]:
    conditions: List[Dict[str, Any]] = []
    if source_type:
        conditions.append({"source_type": source_type})
    if category:
        # agent-specific category plus documents shared by every agent
        conditions.append({"category": {"$in": [category, SHARED_CATEGORY]}})
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


def _meta(meta: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if meta.get(k) not in (None, ""):
            return meta[k]
    return default


def _primary_fragment(row: Dict[str, Any]) -> KnowledgeFragment:
    meta = row.get("metadata") or {}
    return KnowledgeFragment(
        content=row.get("document") or "",
        file_name=_meta(meta, "file_name", "fileName", default=row.get("id", "unknown")),
        source_type=_meta(meta, "source_type", "sourceType", default="document"),
        source_id=_meta(meta, "source_id", "sourceId", default=row.get("id")),
        chunk_index=int(_meta(meta, "chunk_index", "chunkIndex", default=0)),
        section_title=_meta(meta, "section_title", "sectionTitle"),
        score=row.get("score"),
        metadata=dict(meta),
    )


def _secondary_fragment(row: Dict[str, Any]) -> KnowledgeFragment:
    meta = row.get("metadata") or {}
    merged_text = _meta(meta, "merged_text", "mergedText")
    return KnowledgeFragment(
        content=merged_text or row.get("document") or "",
        file_name=_meta(meta, "file_name", "fileName", default=row.get("id", "unknown")),
        source_type=OCR_SOURCE_TYPE,
        source_id=row.get("id"),
        chunk_index=0,
        section_title=_meta(meta, "section_title", "sectionTitle"),
        score=row.get("score"),
        metadata={
            "blob_path": _meta(meta, "blob_path", "blobPath"),
            "last_modified": _meta(meta, "last_modified", "lastModified"),
            "has_merged_text": bool(merged_text),
        },
    )


def merge_fragments(primary: Sequence[KnowledgeFragment], secondary: Sequence[KnowledgeFragment],
                    top_k: int) -> List[KnowledgeFragment]:
    merged: Dict[Tuple[str, int], KnowledgeFragment] = {}
    for frag in primary:
        merged[frag.identity] = frag

    for ocr in secondary:
        has_merged_text = bool(ocr.metadata.get("has_merged_text"))
        if not (has_merged_text or len(ocr.content) > MIN_OCR_CONTENT_CHARS):
            continue

        existing = [k for k in merged if k[0] == ocr.file_name]
        if not existing:
            merged[(ocr.file_name, 0)] = ocr
            logger.debug("Added OCR content for %s (not in primary index)", ocr.file_name)
            continue

        primary_len = len(merged[existing[0]].content)
        if has_merged_text and len(ocr.content) >= primary_len * OCR_REPLACE_RATIO:
            for k in existing:
                del merged[k]
            merged[(ocr.file_name, 0)] = ocr
            logger.info("Replaced %d primary chunks with OCR text for %s (%d vs %d chars)",
                        len(existing), ocr.file_name, len(ocr.content), primary_len)

    ordered = sorted(merged.values(), key=lambda f: f.score or 0.0, reverse=True)
    return ordered[:top_k]


def summarize_fragments(fragments: Sequence[KnowledgeFragment]) -> str:
    if not fragments:
        return EMPTY_SUMMARY
    documents: List[str] = []
    for f in fragments:
        if f.file_name not in documents:
            documents.append(f.file_name)
    return (f"Retrieved {len(fragments)} relevant sections from {len(documents)} "
            f"compliance document(s): {', '.join(documents)}")


def format_for_prompt(context: KnowledgeContext) -> str:
    """Render a knowledge context as a prompt section; empty string when there is nothing to add."""
    if not context.fragments:
        return ""
    parts = ["## Organization Compliance Standards\n", f"{context.summary}\n"]
    for i, frag in enumerate(context.fragments, start=1):
        parts.append(f"### Reference {i}: {frag.file_name}")
        if frag.section_title:
            parts.append(f"**Section:** {frag.section_title}")
        parts.append(f"\n{frag.content}\n")
        parts.append("---\n")
    return "\n".join(parts)


class KnowledgeRetriever:
    """
    Args:
        primary_search / secondary_search: blocking search callables returning rows
            shaped like chroma_client.rows_from_result(). Default to the Chroma indexes.
        embed: blocking query embedder.
        configured: predicate for is_configured().
    """

    def __init__(self,
                 primary_search: Optional[PrimarySearch] = None,
                 secondary_search: Optional[SecondarySearch] = None,
                 embed: Optional[Callable[[str], List[float]]] = None,
                 configured: Optional[Callable[[], bool]] = None):
        self._primary_search = primary_search or _chroma_primary_search
        self._secondary_search = secondary_search or _chroma_secondary_search
        self._embed = embed or embed_query
        self._configured = configured or knowledge_backend_configured

    def is_configured(self) -> bool:
        try:
            return bool(self._configured())
        except Exception as e:
            logger.warning("Knowledge backend configuration check failed: %s", e)
            return False

    async def _query_primary(self, query: str, top_k: int, where: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        embedding = await asyncio.to_thread(self._embed, query)
        return await asyncio.to_thread(self._primary_search, query, embedding, top_k, where)

    @staticmethod
    async def _contribution(label: str, coro: Awaitable[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        try:
            return list(await coro or [])
        except Exception as e:
            logger.warning("Error querying %s index: %s", label, e)
            return []

    async def retrieve(self, query: str, top_k: int = DEFAULT_TOP_K,
                       source_type: Optional[str] = None, category: Optional[str] = None) -> KnowledgeContext:
        try:
            where = build_filter(source_type, category)
            primary_rows, secondary_rows = await asyncio.gather(
                self._contribution("primary", self._query_primary(query, top_k, where)),
                self._contribution("secondary", asyncio.to_thread(self._secondary_search, query, top_k)),
            )
            logger.info("Retrieved %d primary rows and %d OCR rows for query", len(primary_rows), len(secondary_rows))

            fragments = merge_fragments(
                [_primary_fragment(r) for r in primary_rows],
                [_secondary_fragment(r) for r in secondary_rows],
                top_k,
            )
            return KnowledgeContext(fragments=tuple(fragments), summary=summarize_fragments(fragments))
        except Exception as e:
            logger.exception("Knowledge retrieval failed: %s", e)
            return KnowledgeContext(fragments=(), summary=EMPTY_SUMMARY)

    async def retrieve_many(self, queries: Sequence[str], top_k_per_query: int = DEFAULT_TOP_K_PER_QUERY,
                            source_type: Optional[str] = COMPLIANCE_SOURCE_TYPE,
                            category: Optional[str] = None) -> KnowledgeContext:
        """Union of per-query results, deduplicated by (file_name, chunk_index) in query order."""
        if not queries:
            return KnowledgeContext(fragments=(), summary=EMPTY_SUMMARY)

        contexts = await asyncio.gather(*[
            self.retrieve(q, top_k=top_k_per_query, source_type=source_type, category=category)
            for q in queries
        ])

        seen = set()
        fragments: List[KnowledgeFragment] = []
        for ctx in contexts:
            for frag in ctx.fragments:
                if frag.identity in seen:
                    continue
                seen.add(frag.identity)
                fragments.append(frag)

        return KnowledgeContext(fragments=tuple(fragments), summary=summarize_fragments(fragments))
