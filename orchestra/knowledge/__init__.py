"""知识库模块：分块、向量化、余弦相似度检索。"""

from orchestra.knowledge.chunker import CHUNK_SIZE, split_text_into_chunks
from orchestra.knowledge.embedding import EmbeddingModel, HttpEmbeddingModel
from orchestra.knowledge.engine import KnowledgeEngine
from orchestra.knowledge.models import KNOWLEDGE_VERSION, KnowledgeBase, KnowledgeMeta, SearchResult
from orchestra.knowledge.similarity import cosine_similarity

__all__ = [
    "CHUNK_SIZE",
    "EmbeddingModel",
    "HttpEmbeddingModel",
    "KNOWLEDGE_VERSION",
    "KnowledgeBase",
    "KnowledgeEngine",
    "KnowledgeMeta",
    "SearchResult",
    "cosine_similarity",
    "split_text_into_chunks",
]
