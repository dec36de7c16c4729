"""
LLM (Ollama) API クライアント

/api/chat にストリーミングでリクエストし、出力をJSONスキーマで拘束します。
新しいメッセージによるキャンセルをチャンクごとに確認します。
"""

import asyncio
import json
import logging
from typing import Callable, Dict, List, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from roombot.exceptions import GenerationError
from roombot.models import Turn

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)


class CancelToken:
    """生成1回分のキャンセルフラグ

    cancel() でフラグを立て、登録済みの中断フックを呼び出します。
    """

    def __init__(self) -> None:
        self.cancelled = False
        self._abort_hooks: List[Callable[[], object]] = []

    def add_abort_hook(self, hook: Callable[[], object]) -> None:
        self._abort_hooks.append(hook)

    def remove_abort_hook(self, hook: Callable[[], object]) -> None:
        if hook in self._abort_hooks:
            self._abort_hooks.remove(hook)

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        for hook in list(self._abort_hooks):
            hook()


class LLMClient:
    """Ollama とのやり取りを行うクライアント"""

    def __init__(
        self,
        host: Optional[str] = None,
        keep_alive: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Args:
            host: OllamaのベースURL（Noneの場合は設定値を使用）
            keep_alive: モデル保持時間（秒、Noneの場合は設定値を使用）
            transport: httpxのトランスポート（主にテスト用）
        """
        if host is None or keep_alive is None:
            from roombot.config import get_settings

            settings = get_settings()
            host = host or settings.ollama_host
            keep_alive = keep_alive if keep_alive is not None else settings.keep_alive

        self.host = host.rstrip("/")
        self.keep_alive = keep_alive
        self._transport = transport

    async def chat(
        self,
        token: CancelToken,
        model: str,
        messages: List[Turn],
        result_type: type[ResultT],
    ) -> Optional[ResultT]:
        """
        構造化チャットを1回実行する

        Args:
            token: キャンセルトークン
            model: モデル名
            messages: ロール付きのメッセージ列
            result_type: 期待する出力形式

        Returns:
            解析済みの結果（キャンセル、通信失敗、解析失敗の場合はNone）
        """
        if token.cancelled:
            return None

        payload = {
            "model": model,
            "messages": messages,
            "format": result_type.model_json_schema(),
            "stream": True,
            "keep_alive": self.keep_alive,
        }

        task = asyncio.ensure_future(self._stream(token, payload))
        token.add_abort_hook(task.cancel)
        try:
            content = await task
        except asyncio.CancelledError:
            if token.cancelled:
                logger.debug("Generation aborted", extra={"model": model})
                return None
            raise
        except (httpx.HTTPError, GenerationError) as e:
            if token.cancelled:
                return None
            logger.error(
                "Generation failed",
                extra={"model": model, "error": str(e)},
                exc_info=True,
            )
            return None
        finally:
            token.remove_abort_hook(task.cancel)

        if content is None or token.cancelled:
            return None

        logger.debug("Generation finished", extra={"model": model, "content": content})

        try:
            return result_type.model_validate_json(content)
        except ValidationError as e:
            logger.error(
                "Invalid structured output from LLM",
                extra={"model": model, "content": content, "error": str(e)},
            )
            return None

    async def _stream(self, token: CancelToken, payload: Dict[str, object]) -> Optional[str]:
        """ストリームを読み切ってテキストを返す（途中でキャンセルされたらNone）

        Raises:
            httpx.HTTPError: 通信に失敗した場合
            GenerationError: ストリームの内容が不正な場合
        """
        fragments: List[str] = []

        async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
            async with client.stream("POST", f"{self.host}/api/chat", json=payload) as response:
                response.raise_for_status()

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise GenerationError(
                            "Malformed stream line from LLM service",
                            details={"line": line},
                        ) from e

                    if "error" in data:
                        raise GenerationError(
                            f"LLM service error: {data['error']}",
                            details={"model": payload["model"]},
                        )

                    fragments.append((data.get("message") or {}).get("content", ""))

                    # async with を抜けるとストリームは閉じられる
                    if token.cancelled:
                        return None

                    if data.get("done"):
                        break

        return "".join(fragments)


# グローバルなLLMクライアントインスタンス
_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """
    グローバルなLLMクライアントインスタンスを取得
    （シングルトンパターン）
    """
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
