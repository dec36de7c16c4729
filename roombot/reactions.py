"""リアクション語彙

「気分」の名前から絵文字への固定マッピング。
"""

from typing import Literal

REACTIONS: dict[str, str] = {
    "laugh": "😂",
    "love": "❤️",
    "like": "👍",
    "dislike": "👎",
    "celebrate": "🎉",
    "thinking": "🤔",
    "happy": "😊",
    "watching": "👀",
    "sleepy": "😴",
    "sad": "😢",
}

# "none" は常に選択可能（リアクションしない）
Feeling = Literal[
    "none",
    "laugh",
    "love",
    "like",
    "dislike",
    "celebrate",
    "thinking",
    "happy",
    "watching",
    "sleepy",
    "sad",
]

FEELINGS: tuple[str, ...] = ("none", *REACTIONS)


def glyph_for(feeling: str) -> str | None:
    """気分に対応する絵文字を取得

    Args:
        feeling: 気分の名前

    Returns:
        絵文字（"none" または未知の名前の場合はNone）
    """
    return REACTIONS.get(feeling)
