"""ルーム会話ステートマシン

ルームごとの会話履歴・要約・応答義務を管理し、
同時に届いたメッセージを1つの生成リクエストにまとめます。
"""

import asyncio
import json
import logging
import re
from typing import List, Optional, Protocol

from roombot.config import get_settings
from roombot.llm_client import CancelToken, LLMClient
from roombot.models import (
    ChatMessage,
    PersonaReply,
    ReplyFormats,
    SummaryUpdate,
    Turn,
    build_reply_formats,
    system_turn,
    user_turn,
)
from roombot.persona_loader import PersonaConfig
from roombot.reactions import FEELINGS, glyph_for

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTION = (
    "Given a summary of the conversation so far and the conversation that has happened "
    "since you must concisely update the summary. The summary MUST be no more than 200 words.\n"
    "Example:\n"
    '{"summary":"sally was asking about good computers to buy. george recommended she look '
    'into thinkpads. bob shared his elaborate breakfast of waffles and pancakes."}'
)
SUMMARY_CLOSING = "Write an updated summary for the conversation."


class RoomOutlet(Protocol):
    """ステートマシンからネットワークへの出力先（ルーム単位）"""

    async def send_read_receipt(self, event_id: str) -> None: ...

    async def set_typing(self, typing: bool, timeout: int = 30000) -> None: ...

    async def send_reaction(self, event_id: str, glyph: str) -> None: ...

    async def send_text(self, text: str) -> None: ...


class RoomConversation:
    """1ルーム分の会話状態

    状態:
    - Idle: 何も生成していない
    - Busy: 要約を生成中（新着メッセージは待機スロットに入る）
    - Generating: 応答を生成中（新着メッセージが来るとキャンセルされる）
    """

    def __init__(
        self,
        room_id: str,
        persona: PersonaConfig,
        llm_client: LLMClient,
        outlet: RoomOutlet,
        reply_formats: Optional[ReplyFormats] = None,
    ) -> None:
        """初期化

        Args:
            room_id: ルームID
            persona: ペルソナ設定
            llm_client: LLMクライアント
            outlet: 出力先
            reply_formats: 応答の出力形式（Noneの場合はペルソナから作成）
        """
        self.settings = get_settings()
        self.room_id = room_id
        self.persona = persona
        self.llm_client = llm_client
        self.outlet = outlet
        self.reply_formats = reply_formats or build_reply_formats(persona.username)

        self.history: List[Turn] = []
        self.summary = ""
        self.busy = False
        self.respond = False

        self._waiter: Optional[asyncio.Future[bool]] = None
        self._inflight: Optional[CancelToken] = None
        self._mention_pattern = re.compile(rf"\b{re.escape(persona.username)}\b")

    @property
    def has_waiter(self) -> bool:
        """待機中のメッセージがあるか"""
        return self._waiter is not None and not self._waiter.done()

    def summary_turn(self) -> Turn:
        """現在の要約を表す system ターン"""
        return system_turn(
            "The summary of the conversation so far is: "
            + json.dumps({"summary": self.summary}, ensure_ascii=False)
        )

    def is_mentioned(self, text: str) -> bool:
        """ペルソナ名が単語として含まれているか"""
        return self._mention_pattern.search(text) is not None

    async def on_message(self, message: ChatMessage, event_id: str) -> None:
        """受信メッセージを処理

        Args:
            message: エイリアス解決済みのチャットメッセージ
            event_id: 元イベントのID（既読・リアクション用）
        """
        self.history.append(user_turn(message))

        if self.busy:
            if not await self._wait_for_turn():
                return
            # 再開までの間に届いた新しいメッセージがあれば、そちらに譲る
            if self._release_busy():
                return

        if len(self.history) > self.settings.history_limit:
            try:
                await self._summarize()
            finally:
                handed_off = self._release_busy()
            if handed_off:
                return

        # 古い応答生成を中断
        self._cancel_inflight()
        token = CancelToken()
        self._inflight = token

        if self.persona.respond == "always" or self.is_mentioned(message["message"]):
            self.respond = True

        await self.outlet.send_read_receipt(event_id)

        if self.persona.respond == "mentioned" and not self.respond and not self.persona.reactions:
            return

        reply_type = self._select_reply_type()
        prompt = self._build_prompt(reply_type)

        if self.respond:
            await self.outlet.set_typing(True, self.settings.typing_timeout)

        try:
            reply = await self.llm_client.chat(token, self.persona.model, prompt, reply_type)
        finally:
            if self._inflight is token:
                self._inflight = None

        if reply is None:
            return

        logger.info(
            "Reply generated",
            extra={
                "room_id": self.room_id,
                "respond": reply.respond,
                "feeling": reply.feeling,
                "has_message": reply.text is not None,
            },
        )

        # 送信の待ち時間に届いたメッセージより先に応答を履歴に積む
        if reply.text:
            self.history.append(reply.to_turn())

        if self.persona.reactions and reply.feeling != "none":
            glyph = glyph_for(reply.feeling)
            if glyph:
                await self.outlet.send_reaction(event_id, glyph)

        # リアクションのみの場合、応答義務は残す
        if not reply.text:
            return

        await self.outlet.send_text(reply.text)
        await self.outlet.set_typing(False)
        self.respond = False

    async def _wait_for_turn(self) -> bool:
        """要約の完了を待つ

        待機スロットは1つだけ。既に待機者がいれば「続行しない」で解決して置き換える。

        Returns:
            続行すべきか
        """
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(False)

        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._waiter = waiter

        logger.debug(
            "Waiting for summarization",
            extra={"room_id": self.room_id, "history_length": len(self.history)},
        )
        return await waiter

    async def _summarize(self) -> None:
        """古い履歴を要約に畳み込む"""
        self.busy = True
        # 応答生成と要約は同時に走らせない
        self._cancel_inflight()

        limit = self.settings.history_limit
        count = max(limit // 2, len(self.history) - limit)
        to_summarize = self.history[:count]
        del self.history[:count]

        logger.info(
            "Summarizing conversation",
            extra={
                "room_id": self.room_id,
                "summarized_count": len(to_summarize),
                "remaining_count": len(self.history),
            },
        )

        messages: List[Turn] = [
            system_turn(SUMMARY_INSTRUCTION),
            self.summary_turn(),
            *to_summarize,
            system_turn(SUMMARY_CLOSING),
        ]

        result = await self.llm_client.chat(
            CancelToken(), self.persona.model, messages, SummaryUpdate
        )
        if result is not None:
            self.summary = result.summary
            logger.info(
                "Summary updated",
                extra={"room_id": self.room_id, "summary": result.summary},
            )

    def _release_busy(self) -> bool:
        """Busy を抜ける。待機者がいれば Busy のまま引き継ぐ

        Returns:
            待機者に引き継いだか
        """
        if self.has_waiter:
            waiter, self._waiter = self._waiter, None
            waiter.set_result(True)
            return True
        self.busy = False
        return False

    def _cancel_inflight(self) -> None:
        if self._inflight is not None and not self._inflight.cancelled:
            logger.debug("Cancelling stale generation", extra={"room_id": self.room_id})
            self._inflight.cancel()
        self._inflight = None

    def _select_reply_type(self) -> type[PersonaReply]:
        if self.respond:
            return self.reply_formats.mandatory_message
        if self.persona.respond == "sometimes":
            return self.reply_formats.optional_message
        return self.reply_formats.without_message

    def _build_prompt(self, reply_type: type[PersonaReply]) -> List[Turn]:
        name = self.persona.username
        if reply_type is self.reply_formats.mandatory_message:
            tail = ", and the response message."
        elif reply_type is self.reply_formats.optional_message:
            tail = ", and optionally the response message."
        else:
            tail = "."

        closing = (
            f"Respond in JSON whether {name} responds (yes, no) and how {name} "
            f"is feeling ({', '.join(FEELINGS)}){tail}"
        )

        return [
            *(system_turn(prompt) for prompt in self.persona.system_prompts),
            self.summary_turn(),
            *self.history,
            system_turn(closing),
        ]
