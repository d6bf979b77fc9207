# =============================================
# File: giftfinder/utils/embeddings.py
# Purpose: Local sentence-transformers encoder (offline embedding provider)
# =============================================
from sentence_transformers import SentenceTransformer
from functools import lru_cache
import os

DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


@lru_cache(maxsize=2)
def get_embedding_model(model_name: str | None = None) -> SentenceTransformer:
    name = model_name or os.getenv("LOCAL_EMBEDDING_MODEL", DEFAULT_LOCAL_MODEL)
    return SentenceTransformer(name, device=os.getenv("LOCAL_EMBEDDING_DEVICE", "cpu"))


def embed_texts(texts: list[str], model_name: str | None = None) -> list[list[float]]:
    model = get_embedding_model(model_name)
    # numpy array -> plain lists so vectors can be cached and serialized for pgvector
    return model.encode(texts, normalize_embeddings=True).tolist()


def rough_token_count(text: str) -> int:
    # ~4 chars per token for English
    return max(1, len(text or "") // 4)
