# vendor_eval/services/embeddings.py
"""
Query embeddings for knowledge retrieval.

Local sentence-transformers model by default (EMBED_MODEL), or the OpenAI
embeddings API when EMBED_PROVIDER=openai.
"""
from __future__ import annotations
import logging
from typing import List

from vendor_eval.config import cfg

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

OPENAI_EMBED_MODEL = "text-embedding-3-small"

# Local embedder - lazy init
_local_embedder = None


def _init_local_embedder():
    global _local_embedder
    if _local_embedder is None:
        try:
            from sentence_transformers import SentenceTransformer
        except Exception as e:
            raise RuntimeError("sentence-transformers is required for local embeddings") from e
        model_name = cfg.EMBED_MODEL
        logger.info("Initializing local embedder: %s", model_name)
        _local_embedder = SentenceTransformer(model_name)
    return _local_embedder


def _embed_local(text: str) -> List[float]:
    m = _init_local_embedder()
    emb = m.encode([text], show_progress_bar=False)[0]
    if hasattr(emb, "tolist"):
        emb = emb.tolist()
    return [float(x) for x in emb]


def _embed_openai(text: str) -> List[float]:
    from openai import OpenAI
    if not cfg.OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY not configured in cfg")
    client = OpenAI(api_key=cfg.OPENAI_API_KEY, base_url=cfg.OPENAI_BASE_URL) if cfg.OPENAI_BASE_URL \
        else OpenAI(api_key=cfg.OPENAI_API_KEY)
    resp = client.embeddings.create(input=[text], model=OPENAI_EMBED_MODEL)
    return list(resp.data[0].embedding)


def embed_query(text: str) -> List[float]:
    """Blocking; async callers run it in a worker thread."""
    if cfg.EMBED_PROVIDER == "openai":
        return _embed_openai(text)
    return _embed_local(text)


def has_embedding_capability() -> bool:
    if cfg.EMBED_PROVIDER == "openai":
        return bool(cfg.OPENAI_API_KEY)
    return bool(cfg.EMBED_MODEL)
