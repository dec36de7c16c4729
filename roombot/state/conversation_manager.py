"""ルーム会話マネージャー

ペルソナ1つにつき1インスタンス。ルームIDごとの RoomConversation を保持します。
"""

import logging
from typing import Callable, Optional

from roombot.llm_client import LLMClient
from roombot.models import build_reply_formats
from roombot.persona_loader import PersonaConfig
from roombot.state.room_conversation import RoomConversation, RoomOutlet

logger = logging.getLogger(__name__)


class ConversationManager:
    """ルーム会話マネージャー

    ルームは初回イベントで作成され、プロセス終了まで破棄されません。
    """

    def __init__(
        self,
        persona: PersonaConfig,
        llm_client: LLMClient,
        outlet_factory: Callable[[str], RoomOutlet],
    ) -> None:
        """初期化

        Args:
            persona: ペルソナ設定
            llm_client: LLMクライアント
            outlet_factory: ルームID -> 出力先
        """
        self.persona = persona
        self.llm_client = llm_client
        self.outlet_factory = outlet_factory
        self.reply_formats = build_reply_formats(persona.username)

        # ルームID -> 会話状態
        self._rooms: dict[str, RoomConversation] = {}

        logger.info("ConversationManager initialized", extra={"user_id": persona.user_id})

    def get_room(self, room_id: str) -> RoomConversation:
        """ルームの会話状態を取得（無ければ作成）

        Args:
            room_id: ルームID

        Returns:
            会話状態
        """
        room = self._rooms.get(room_id)
        if room is None:
            room = RoomConversation(
                room_id=room_id,
                persona=self.persona,
                llm_client=self.llm_client,
                outlet=self.outlet_factory(room_id),
                reply_formats=self.reply_formats,
            )
            self._rooms[room_id] = room
            logger.info(
                "Room conversation created",
                extra={"room_id": room_id, "user_id": self.persona.user_id},
            )
        return room

    def find_room(self, room_id: str) -> Optional[RoomConversation]:
        """既存のルームの会話状態を取得"""
        return self._rooms.get(room_id)

    def get_all_rooms(self) -> list[str]:
        """全ルームIDを取得"""
        return list(self._rooms.keys())

    def get_stats(self) -> dict[str, int]:
        """統計情報を取得"""
        rooms = self._rooms.values()
        return {
            "total_rooms": len(self._rooms),
            "total_turns": sum(len(room.history) for room in rooms),
            "rooms_owing_reply": sum(1 for room in rooms if room.respond),
            "rooms_busy": sum(1 for room in rooms if room.busy),
        }
