"""
知识库检索引擎。

【入库】
文件 → split_text_into_chunks() 切块 → 基础嵌入模型逐块向量化 → 以知识库为单位存入 KeyValueStore。
重复入库同一份文件会生成新的知识库，不做去重。

【检索】
查询 → 检索嵌入模型向量化 → 与选中知识库（未指定则全部）的每个块计算余弦相似度
→ 保留 similarity >= threshold 的结果 → 按相似度降序 → 截取前 limit 条。

基础模型与检索模型的向量维度必须一致，这里不做强校验：
维度不一致时只比较公共前缀，并在本次检索中告警一次。
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from loguru import logger

from orchestra.config.schema import Config
from orchestra.history.store import KeyValueStore
from orchestra.knowledge.chunker import CHUNK_SIZE, split_text_into_chunks
from orchestra.knowledge.embedding import EmbeddingModel, HttpEmbeddingModel
from orchestra.knowledge.models import (
    ChunkMetadata,
    KnowledgeBase,
    KnowledgeChunk,
    KnowledgeFile,
    KnowledgeMeta,
    SearchResult,
)
from orchestra.knowledge.similarity import cosine_similarity
from orchestra.utils.helpers import gen_id, now_ms

ProgressCallback = Callable[[float, str, str | None], None]


class KnowledgeEngine:
    """
    知识库引擎。

    属性:
        store: 知识库文档存储（键为知识库 ID）
        base_model: 入库时使用的嵌入模型
        search_model: 检索时使用的嵌入模型
        threshold: 相似度阈值
        limit: 返回结果的最大条数
        chunk_size: 分块大小
    """

    def __init__(
        self,
        store: KeyValueStore,
        base_model: EmbeddingModel,
        search_model: EmbeddingModel | None = None,
        threshold: float = 0.6,
        limit: int = 5,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.store = store
        self.base_model = base_model
        self.search_model = search_model or base_model
        self.threshold = threshold
        self.limit = limit
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, config: Config, store: KeyValueStore) -> "KnowledgeEngine":
        kc = config.knowledge
        return cls(
            store=store,
            base_model=HttpEmbeddingModel.from_config(kc.base_model, config.providers),
            search_model=HttpEmbeddingModel.from_config(kc.search_model, config.providers),
            threshold=kc.threshold,
            limit=kc.limit,
            chunk_size=kc.chunk_size,
        )

    # ===== 入库 =====

    async def add(
        self,
        documents: Iterable[tuple[str, str]],
        name: str | None = None,
        description: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> KnowledgeBase:
        """
        新建知识库。

        参数:
            documents: (文件名, 文本内容) 序列
            name: 知识库名称，为空时取第一个文件名
            description: 知识库描述
            on_progress: 进度回调 (百分比, 状态, 当前文件名)

        返回:
            已持久化的 KnowledgeBase
        """
        documents = list(documents)
        now = now_ms()
        files: list[KnowledgeFile] = []

        for file_index, (file_name, content) in enumerate(documents):
            pieces = split_text_into_chunks(content, self.chunk_size)
            chunks: list[KnowledgeChunk] = []
            for i, piece in enumerate(pieces):
                embedding = await self.base_model.embed(piece)
                chunks.append(KnowledgeChunk(
                    content=piece,
                    embedding=embedding,
                    metadata=ChunkMetadata(paragraph_number=i + 1, created_at=now, updated_at=now),
                ))
                if on_progress:
                    progress = (file_index + (i + 1) / len(pieces)) / len(documents) * 100
                    on_progress(progress, "Generating text vectors...", file_name)

            files.append(KnowledgeFile(
                name=file_name,
                content=content,
                file_type=Path(file_name).suffix.lstrip(".").lower() or "txt",
                chunks=chunks,
                created_at=now,
                updated_at=now,
            ))

        meta = KnowledgeMeta(
            id=gen_id(),
            name=name or (files[0].name if files else f"Knowledge_{datetime.now().strftime('%Y-%m-%d')}"),
            description=description,
            created_at=now,
            updated_at=now,
        )
        kb = KnowledgeBase(meta=meta, files=files)
        self._save(kb)

        logger.info(f"Knowledge base {meta.id} ({meta.name}) created: {len(files)} files, {kb.chunk_count} chunks")
        if on_progress:
            on_progress(100.0, "Processing completed", None)
        return kb

    async def add_files(
        self,
        paths: Iterable[str | Path],
        name: str | None = None,
        description: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> KnowledgeBase:
        """读取文本文件后入库。"""
        documents = []
        for path in paths:
            path = Path(path).expanduser()
            documents.append((path.name, path.read_text(encoding="utf-8")))
        return await self.add(documents, name=name, description=description, on_progress=on_progress)

    # ===== 检索 =====

    async def search(self, query: str, knowledge_ids: list[str] | None = None) -> list[SearchResult]:
        """
        检索知识库。

        参数:
            query: 查询内容
            knowledge_ids: 要检索的知识库 ID，为空时检索全部

        返回:
            按相似度降序、最多 limit 条、相似度均不低于 threshold 的结果
        """
        query_embedding = await self.search_model.embed(query)
        results: list[SearchResult] = []
        warned = False

        for kb in self._iter_bases(knowledge_ids):
            for file in kb.files:
                for chunk in file.chunks:
                    if not warned and len(chunk.embedding) != len(query_embedding):
                        logger.warning(
                            f"Embedding dimension mismatch in {kb.meta.id}: "
                            f"query={len(query_embedding)}, chunk={len(chunk.embedding)}"
                        )
                        warned = True
                    similarity = cosine_similarity(query_embedding, chunk.embedding)
                    if similarity >= self.threshold:
                        results.append(SearchResult(
                            content=chunk.content,
                            similarity=similarity,
                            document_name=f"{kb.meta.name}/{file.name}",
                            document_id=kb.meta.id,
                        ))

        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:self.limit]

    def _iter_bases(self, knowledge_ids: list[str] | None) -> Iterable[KnowledgeBase]:
        ids = knowledge_ids or self.store.keys()
        for kb_id in ids:
            kb = self.get(kb_id)
            if kb is not None:
                yield kb

    # ===== 管理 =====

    def list(self) -> list[KnowledgeMeta]:
        """所有知识库的元数据（按创建时间排序）。"""
        metas = [kb.meta for kb in self._iter_bases(None)]
        return sorted(metas, key=lambda m: m.created_at)

    def get(self, knowledge_id: str) -> KnowledgeBase | None:
        data = self.store.get(knowledge_id)
        if data is None:
            return None
        try:
            return KnowledgeBase.model_validate(data)
        except ValueError as e:
            logger.warning(f"Failed to load knowledge base {knowledge_id}: {e}")
            return None

    def delete(self, knowledge_id: str) -> bool:
        deleted = self.store.delete(knowledge_id)
        if deleted:
            logger.info(f"Knowledge base {knowledge_id} deleted")
        return deleted

    def set_name(self, knowledge_id: str, name: str) -> KnowledgeMeta | None:
        return self._update_meta(knowledge_id, name=name)

    def set_description(self, knowledge_id: str, description: str) -> KnowledgeMeta | None:
        return self._update_meta(knowledge_id, description=description)

    def _update_meta(self, knowledge_id: str, **fields: str) -> KnowledgeMeta | None:
        kb = self.get(knowledge_id)
        if kb is None:
            return None
        kb.meta = kb.meta.model_copy(update={**fields, "updated_at": now_ms()})
        self._save(kb)
        return kb.meta

    def _save(self, kb: KnowledgeBase) -> None:
        self.store.set(kb.meta.id, kb.model_dump())
