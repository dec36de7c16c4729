"""メッセージハンドリングサービス

ルームイベントのフィルタリングとエイリアス解決を行い、
ルームの会話ステートマシンに引き渡します。
Matrixクライアントのイベントオブジェクトからは分離された実装です。
"""

import logging

from roombot.aliases import RegexAlias, resolve_message
from roombot.exceptions import MessageHandlingError
from roombot.persona_loader import PersonaConfig
from roombot.state.conversation_manager import ConversationManager

logger = logging.getLogger(__name__)

HANDLED_MSGTYPES = ("m.text", "m.emote")


class MessageHandler:
    """メッセージハンドリングサービス

    責務:
    - テキスト/エモート以外、および自分自身のメッセージの除外
    - 送信者エイリアスの解決
    - ルームの会話状態への委譲
    """

    def __init__(
        self,
        persona: PersonaConfig,
        conversation_manager: ConversationManager,
    ):
        """初期化

        Args:
            persona: ペルソナ設定
            conversation_manager: ルーム会話マネージャー
        """
        self.persona = persona
        self.conversation_manager = conversation_manager
        self.rewrite_rules: list[RegexAlias] = persona.rewrite_rules

        logger.info("MessageHandler initialized", extra={"user_id": persona.user_id})

    async def handle_room_message(
        self,
        room_id: str,
        sender: str,
        event_id: str,
        body: str,
        msgtype: str,
        own_user_id: str,
    ) -> None:
        """ルームメッセージを処理

        Args:
            room_id: ルームID
            sender: 送信者ID
            event_id: イベントID
            body: メッセージ本文
            msgtype: メッセージ種別
            own_user_id: Bot自身のユーザーID

        Raises:
            MessageHandlingError: 処理中に予期しないエラーが起きた場合
        """
        if msgtype not in HANDLED_MSGTYPES:
            return
        if sender == own_user_id:
            return

        message = resolve_message(
            sender=sender,
            body=body,
            msgtype=msgtype,
            aliases=self.persona.aliases,
            message_aliases=self.rewrite_rules,
        )
        if message is None:
            logger.debug(
                "Dropped message from unresolvable sender",
                extra={"room_id": room_id, "sender": sender},
            )
            return

        room = self.conversation_manager.get_room(room_id)

        try:
            await room.on_message(message, event_id)
        except Exception as e:
            raise MessageHandlingError(
                "Failed to handle room message",
                details={"room_id": room_id, "event_id": event_id},
            ) from e
