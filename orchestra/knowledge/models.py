"""
知识库数据模型（Pydantic）。

一个知识库 = 元数据（KnowledgeMeta）+ 若干文件（KnowledgeFile），
每个文件被切成带向量的文本块（KnowledgeChunk）。整个知识库作为一个文档存入 KeyValueStore。
"""

from pydantic import BaseModel, Field

from orchestra.utils.helpers import now_ms

KNOWLEDGE_VERSION = "1.0.0"


class ChunkMetadata(BaseModel):
    source_page: int | None = None
    paragraph_number: int | None = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class KnowledgeChunk(BaseModel):
    """文本块：内容 + 向量 + 元数据。"""
    content: str
    embedding: list[float]
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class KnowledgeFile(BaseModel):
    name: str
    content: str
    file_type: str = "txt"
    chunks: list[KnowledgeChunk] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class KnowledgeMeta(BaseModel):
    """知识库元数据。description 会作为知识库工具的描述展示给模型。"""
    id: str
    name: str
    description: str = ""
    version: str = KNOWLEDGE_VERSION
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class KnowledgeBase(BaseModel):
    meta: KnowledgeMeta
    files: list[KnowledgeFile] = Field(default_factory=list)

    @property
    def chunk_count(self) -> int:
        return sum(len(f.chunks) for f in self.files)


class SearchResult(BaseModel):
    """
    一条检索结果。

    属性:
        document_name: "<知识库名>/<文件名>"
        document_id: 知识库 ID
    """
    content: str
    similarity: float
    document_name: str
    document_id: str
