"""
Matrix Bot メインファイル
"""

import asyncio
import logging
from typing import Optional

import nio
from dotenv import load_dotenv

from roombot.config import get_settings
from roombot.exceptions import ConfigurationError
from roombot.handlers import MessageHandler
from roombot.llm_client import LLMClient, get_llm_client
from roombot.persona_loader import PersonaConfig, PersonaLoader, get_persona_loader
from roombot.state.conversation_manager import ConversationManager

# ロガー設定
logger = logging.getLogger(__name__)

# 環境変数の読み込み
load_dotenv()


class MatrixRoomOutlet:
    """1ルーム分のMatrix送信口

    送信失敗はログに記録して握りつぶす（1ルームの失敗でプロセスを落とさない）。
    """

    def __init__(self, client: nio.AsyncClient, room_id: str) -> None:
        self.client = client
        self.room_id = room_id

    async def send_read_receipt(self, event_id: str) -> None:
        await self._call(
            "read_receipt",
            self.client.update_receipt_marker(self.room_id, event_id),
        )

    async def set_typing(self, typing: bool, timeout: int = 30000) -> None:
        await self._call(
            "typing",
            self.client.room_typing(self.room_id, typing_state=typing, timeout=timeout),
        )

    async def send_reaction(self, event_id: str, glyph: str) -> None:
        content = {
            "m.relates_to": {
                "rel_type": "m.annotation",
                "event_id": event_id,
                "key": glyph,
            }
        }
        await self._call(
            "reaction",
            self.client.room_send(self.room_id, "m.reaction", content),
        )

    async def send_text(self, text: str) -> None:
        content = {"msgtype": "m.text", "body": text}
        await self._call(
            "text",
            self.client.room_send(self.room_id, "m.room.message", content),
        )

    async def _call(self, action: str, request) -> None:
        try:
            response = await request
        except Exception as e:
            logger.error(
                "Matrix request failed",
                extra={"room_id": self.room_id, "action": action, "error": str(e)},
                exc_info=True,
            )
            return

        if isinstance(response, nio.ErrorResponse):
            logger.warning(
                "Matrix request returned an error",
                extra={"room_id": self.room_id, "action": action, "error": str(response)},
            )


class PersonaBot:
    """ペルソナ1つ分のMatrix Bot

    責務:
    - Matrix クライアントのライフサイクル管理（登録・招待参加・同期）
    - イベントルーティング（handlers への委譲）
    """

    def __init__(
        self,
        persona: PersonaConfig,
        persona_loader: PersonaLoader,
        llm_client: LLMClient,
        client: Optional[nio.AsyncClient] = None,
    ) -> None:
        self.settings = get_settings()
        self.persona = persona
        self.persona_loader = persona_loader
        self.llm_client = llm_client
        self.client = client or nio.AsyncClient(persona.homeserver_url, persona.username)
        self.own_user_id = persona.user_id

        self.conversation_manager = ConversationManager(
            persona=persona,
            llm_client=llm_client,
            outlet_factory=lambda room_id: MatrixRoomOutlet(self.client, room_id),
        )
        self.message_handler = MessageHandler(
            persona=persona,
            conversation_manager=self.conversation_manager,
        )
        self._tasks: set[asyncio.Task] = set()

        logger.info("PersonaBot initialized", extra={"user_id": persona.user_id})

    async def start(self) -> None:
        """ログイン状態を整え、コールバックを登録する"""
        if not self.persona.access_token:
            await self._register()

        self.client.access_token = self.persona.access_token
        self.client.user_id = self.persona.user_id

        whoami = await self.client.whoami()
        if isinstance(whoami, nio.WhoamiResponse):
            self.own_user_id = whoami.user_id
            self.client.user_id = whoami.user_id
            if whoami.device_id:
                self.client.device_id = whoami.device_id
        else:
            logger.warning(
                "Could not resolve own identity, using configured user_id",
                extra={"user_id": self.persona.user_id, "error": str(whoami)},
            )

        self.client.add_event_callback(self._on_invite, nio.InviteMemberEvent)

        # 再起動前のメッセージに反応しないよう、初回syncの後にメッセージを購読する
        await self.client.sync(timeout=self.settings.sync_timeout, full_state=True)
        self.client.add_event_callback(
            self._on_message, (nio.RoomMessageText, nio.RoomMessageEmote)
        )

        logger.info(f"Started {self.own_user_id}")

    async def run(self) -> None:
        """同期ループを実行する"""
        await self.start()
        try:
            await self.client.sync_forever(timeout=self.settings.sync_timeout, full_state=True)
        finally:
            await self.client.close()

    async def _register(self) -> None:
        """アカウントを登録し、アクセストークンを設定ファイルに書き戻す

        Raises:
            ConfigurationError: 登録に失敗した場合
        """
        response = await self.client.register(self.persona.username, self.persona.password)
        if not isinstance(response, nio.RegisterResponse):
            raise ConfigurationError(
                f"Failed to register {self.persona.user_id}",
                details={"user_id": self.persona.user_id, "error": str(response)},
            )

        self.persona = self.persona_loader.set_access_token(
            self.persona.user_id, response.access_token
        )
        logger.info("Account registered", extra={"user_id": self.persona.user_id})

    async def _on_invite(self, room: nio.MatrixRoom, event: nio.InviteMemberEvent) -> None:
        if event.membership != "invite" or event.state_key != self.own_user_id:
            return

        response = await self.client.join(room.room_id)
        if isinstance(response, nio.JoinResponse):
            logger.info("Joined room", extra={"room_id": room.room_id, "sender": event.sender})
        else:
            logger.error(
                "Failed to join room",
                extra={"room_id": room.room_id, "error": str(response)},
            )

    async def _on_message(self, room: nio.MatrixRoom, event: nio.Event) -> None:
        """メッセージ受信時の処理 - ルーティングのみ

        nioはコールバックを同期ループ内でawaitするため、処理は別タスクで行う。
        """
        content = event.source.get("content", {})
        task = asyncio.create_task(
            self.message_handler.handle_room_message(
                room_id=room.room_id,
                sender=event.sender,
                event_id=event.event_id,
                body=content.get("body", ""),
                msgtype=content.get("msgtype", ""),
                own_user_id=self.own_user_id,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Error handling message",
                extra={"user_id": self.own_user_id, "error": str(error)},
                exc_info=error,
            )


async def run_bots(bots: list[PersonaBot]) -> None:
    """全ペルソナの同期ループを並行実行する"""
    await asyncio.gather(*(bot.run() for bot in bots))


def main() -> None:
    """
    メインエントリーポイント：設定された全ペルソナのBotを起動する

    Raises:
        ConfigurationError: 設定ファイルが不正、またはuser_idが重複している場合
    """
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    persona_loader = get_persona_loader(settings.bots_config_path)
    llm_client = get_llm_client()

    bots = [
        PersonaBot(persona, persona_loader, llm_client)
        for persona in persona_loader.get_all_personas().values()
    ]

    logger.info("Starting bots", extra={"user_ids": persona_loader.list_persona_ids()})
    asyncio.run(run_bots(bots))


if __name__ == "__main__":
    main()
