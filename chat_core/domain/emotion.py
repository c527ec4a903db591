"""回复情绪识别。

基于关键词/表情的查表分类，按优先级首个命中即返回，不区分大小写。
英文关键词按整词匹配（"unhappy" 不算 "happy"）。
只作用于完整的助手回复，不处理流式中的片段。
"""

import re
from enum import Enum
from typing import Dict, Pattern, Tuple


class Emotion(str, Enum):
    NEUTRAL = "neutral"
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    SURPRISED = "surprised"
    THINKING = "thinking"

    def to_expression_name(self) -> str:
        """映射为角色模型的表情名。"""
        return _EXPRESSIONS[self]


_EXPRESSIONS: Dict[Emotion, str] = {
    Emotion.NEUTRAL: "neutral",
    Emotion.HAPPY: "smile",
    Emotion.SAD: "sad",
    Emotion.ANGRY: "angry",
    Emotion.SURPRISED: "surprised",
    Emotion.THINKING: "thinking",
}

# 顺序即优先级
_KEYWORDS: Tuple[Tuple[Emotion, Tuple[str, ...]], ...] = (
    (Emotion.HAPPY, ("开心", "高兴", "太好了", "哈哈", "😊", "😄", "happy", "glad", "joy")),
    (Emotion.SAD, ("难过", "伤心", "抱歉", "😢", "sad", "sorry")),
    (Emotion.ANGRY, ("生气", "愤怒", "😠", "angry")),
    (Emotion.SURPRISED, ("惊讶", "天哪", "居然", "😮", "surprised", "wow")),
    (Emotion.THINKING, ("让我想想", "思考", "嗯", "🤔", "let me think", "hmm")),
)


def _matcher(keyword: str) -> Pattern[str]:
    if keyword.isascii():
        return re.compile(r"\b" + re.escape(keyword) + r"\b")
    return re.compile(re.escape(keyword))


_PATTERNS: Tuple[Tuple[Emotion, Tuple[Pattern[str], ...]], ...] = tuple(
    (emotion, tuple(_matcher(k) for k in keywords)) for emotion, keywords in _KEYWORDS
)


def detect(text: str) -> Emotion:
    lowered = (text or "").lower()
    for emotion, patterns in _PATTERNS:
        if any(p.search(lowered) for p in patterns):
            return emotion
    return Emotion.NEUTRAL
