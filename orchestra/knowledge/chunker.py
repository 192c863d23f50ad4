"""文本分块。"""

import re

CHUNK_SIZE = 425

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
# 中文句末标点后直接断开；英文句末标点后要求下一个字符不是小写字母
_SENTENCE_SPLIT = re.compile(r"(?<=[.。!?！？])\s*(?=[^a-z])|(?<=[。！？])|(?<=[.!?])\s*$")


def _hard_split(text: str, chunk_size: int) -> list[str]:
    return [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)]


def split_text_into_chunks(text: str, chunk_size: int = CHUNK_SIZE) -> list[str]:
    """
    把文本切成不超过 chunk_size 个字符的块。

    1. 按空行切成段落，相邻的短段落用 "\\n\\n" 合并，直到再加一段就会超长
    2. 单个段落超长时按句子切分，相邻句子用空格合并
    3. 单个句子仍然超长时按 chunk_size 硬切

    参数:
        text: 原始文本
        chunk_size: 每块的最大字符数

    返回:
        非空的文本块列表
    """
    chunks: list[str] = []
    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]

    current = ""
    for paragraph in paragraphs:
        if current and len(current) + len(paragraph) + 2 > chunk_size:
            chunks.append(current)
            current = ""

        if len(paragraph) <= chunk_size:
            current = f"{current}\n\n{paragraph}" if current else paragraph
            continue

        if current:
            chunks.append(current)
            current = ""

        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(paragraph) if s and s.strip()]
        sentence_chunk = ""
        for sentence in sentences:
            if sentence_chunk and len(sentence_chunk) + len(sentence) + 1 <= chunk_size:
                sentence_chunk += " " + sentence
                continue
            if sentence_chunk:
                chunks.append(sentence_chunk)
                sentence_chunk = ""
            if len(sentence) > chunk_size:
                chunks.extend(_hard_split(sentence, chunk_size))
            else:
                sentence_chunk = sentence
        if sentence_chunk:
            chunks.append(sentence_chunk)

    if current:
        chunks.append(current)

    return [c.strip() for c in chunks if c.strip()]
