"""Bot用型定義

会話履歴のやり取りにはTypedDictを、LLMの構造化出力にはpydanticモデルを使用します。
"""

from __future__ import annotations

import json
from typing import Literal, NamedTuple, TypedDict

from pydantic import BaseModel, ConfigDict, Field, create_model

from roombot.reactions import Feeling

Role = Literal["user", "system", "assistant"]
RespondPolicy = Literal["always", "sometimes", "mentioned"]

# "from" は予約語なので関数形式で定義
ChatMessage = TypedDict("ChatMessage", {"from": str, "message": str})


class Turn(TypedDict):
    """会話履歴の1要素"""
    role: Role
    content: str


def user_turn(message: ChatMessage) -> Turn:
    """チャットメッセージを user ターンに変換"""
    return {
        "role": "user",
        "content": json.dumps(message, ensure_ascii=False, separators=(",", ":")),
    }


def system_turn(content: str) -> Turn:
    """system ターンを作成"""
    return {"role": "system", "content": content}


class SummaryUpdate(BaseModel):
    """要約生成の出力形式"""
    summary: str


class PersonaReply(BaseModel):
    """応答判断の出力形式（共通部分）"""

    model_config = ConfigDict(populate_by_name=True)

    respond: Literal["yes", "no"]
    feeling: Feeling
    from_: str = Field(alias="from")

    @property
    def text(self) -> str | None:
        """送信するメッセージ本文（無い場合はNone）"""
        return getattr(self, "message", None)

    def to_turn(self) -> Turn:
        """assistant ターンとして履歴に積む形に変換"""
        return {
            "role": "assistant",
            "content": self.model_dump_json(by_alias=True, exclude_none=True),
        }


class ReplyWithoutMessage(PersonaReply):
    """リアクションのみ（メッセージ不可）"""
    pass


class ReplyWithOptionalMessage(PersonaReply):
    """メッセージは任意"""
    message: str | None = None


class ReplyWithMessage(PersonaReply):
    """メッセージ必須（応答義務がある場合）"""
    message: str


class ReplyFormats(NamedTuple):
    """ペルソナごとの出力形式一式"""
    without_message: type[PersonaReply]
    optional_message: type[PersonaReply]
    mandatory_message: type[PersonaReply]


def build_reply_formats(username: str) -> ReplyFormats:
    """"from" フィールドをペルソナのユーザー名に固定した出力形式を作成

    Args:
        username: ペルソナのユーザー名

    Returns:
        3種類の出力形式
    """
    pinned = (Literal[username], Field(alias="from"))  # type: ignore[valid-type]
    return ReplyFormats(
        without_message=create_model(
            "ReplyWithoutMessage", __base__=ReplyWithoutMessage, from_=pinned
        ),
        optional_message=create_model(
            "ReplyWithOptionalMessage", __base__=ReplyWithOptionalMessage, from_=pinned
        ),
        mandatory_message=create_model(
            "ReplyWithMessage", __base__=ReplyWithMessage, from_=pinned
        ),
    )
