"""向量相似度。"""

import math
from typing import Sequence


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    余弦相似度 dot(a, b) / (|a| * |b|)。

    任一向量范数为 0 时返回 0.0。长度不一致时只比较公共前缀（由调用方负责告警）。
    """
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
