# vendor_eval/services/chroma_client.py
"""
Central Chroma client wrapper for the knowledge indexes.

Provides:
- init_client()                          -> chroma client (persistent, http or in-memory)
- get_or_create_collection(name)         -> collection handle (cached per name)
- query_by_embedding(name, embedding, top_k, where)
- query_by_text(name, text, top_k, where)
- rows_from_result(result)               -> flat list of {id, document, metadata, distance}

Notes:
- Index construction happens elsewhere; this module only reads.
- Query helpers log and return {} on failure so a broken index contributes nothing.
"""

from __future__ import annotations
import logging
from typing import List, Dict, Any, Optional

import chromadb
from chromadb.config import Settings as ChromaSettings

from vendor_eval.config import cfg

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# module-level client and collections cache
_CLIENT = None
_COLLECTIONS: Dict[str, Any] = {}


def init_client():
    """
    Initialize (or return cached) Chroma client.

    CHROMA_HOST selects a remote server, CHROMA_PATH a local persistent store;
    with neither an ephemeral in-memory client is created.
    """
    global _CLIENT
    if _CLIENT is not None:
        return _CLIENT

    try:
        if cfg.CHROMA_HOST:
            headers = {"Authorization": f"Bearer {cfg.CHROMA_API_KEY}"} if cfg.CHROMA_API_KEY else None
            _CLIENT = chromadb.HttpClient(host=cfg.CHROMA_HOST, port=cfg.CHROMA_PORT, headers=headers)
        elif cfg.CHROMA_PATH:
            _CLIENT = chromadb.PersistentClient(path=cfg.CHROMA_PATH)
        else:
            _CLIENT = chromadb.Client(ChromaSettings())
        logger.info("Chroma client initialized")
    except Exception as e:
        logger.exception("Failed to initialize Chroma client: %s", e)
        raise
    return _CLIENT


def get_or_create_collection(name: str, metadata: Optional[Dict[str, Any]] = None):
    """
    Return an existing collection or create it.
    """
    client = init_client()
    if name in _COLLECTIONS:
        return _COLLECTIONS[name]
    try:
        coll = client.get_collection(name)
    except Exception:
        # ChromaDB requires non-empty metadata, so provide a default
        collection_metadata = metadata if metadata else {"description": "Vendor evaluation knowledge"}
        coll = client.create_collection(name, metadata=collection_metadata)
    _COLLECTIONS[name] = coll
    return coll


def query_by_embedding(collection_name: str, embedding: List[float], top_k: int = 5,
                       where: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    coll = get_or_create_collection(collection_name)
    try:
        kwargs: Dict[str, Any] = {"query_embeddings": [embedding], "n_results": top_k}
        if where:
            kwargs["where"] = where
        return coll.query(**kwargs)
    except Exception as e:
        logger.exception("Chroma query_by_embedding failed: %s", e)
        return {}


def query_by_text(collection_name: str, text: str, top_k: int = 5,
                  where: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Text query; relies on the collection's own embedding function.
    """
    coll = get_or_create_collection(collection_name)
    try:
        kwargs: Dict[str, Any] = {"query_texts": [text], "n_results": top_k}
        if where:
            kwargs["where"] = where
        return coll.query(**kwargs)
    except Exception as e:
        logger.exception("Chroma query_by_text failed: %s", e)
        return {}


def rows_from_result(result: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Flatten a single-query Chroma result into rows.
    Similarity score is derived from distance as 1 / (1 + distance).
    """
    if not result:
        return []
    documents = (result.get("documents") or [[]])[0] or []
    metadatas = (result.get("metadatas") or [[]])[0] or []
    ids = (result.get("ids") or [[]])[0] or []
    distances = (result.get("distances") or [[]])[0] or []

    rows = []
    for i, doc in enumerate(documents):
        distance = distances[i] if i < len(distances) else None
        rows.append({
            "id": ids[i] if i < len(ids) else f"doc_{i}",
            "document": doc or "",
            "metadata": (metadatas[i] if i < len(metadatas) else None) or {},
            "score": (1.0 / (1.0 + distance)) if distance is not None else None,
        })
    return rows
