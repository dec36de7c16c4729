"""Room Persona Bot カスタム例外定義

ドメイン固有のエラーハンドリングを可能にする。
"""

from typing import Any


class BotError(Exception):
    """Bot基底例外クラス

    全てのBot固有例外の親クラス。
    エラーメッセージと詳細情報を保持。
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """
        Args:
            message: エラーメッセージ
            details: エラーの詳細情報（デバッグ用）
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(BotError):
    """設定エラー

    ペルソナ設定ファイルが読み込めない、形式が不正、
    またはuser_idが重複している場合に発生。起動時の致命的エラー。
    """
    pass


class MessageHandlingError(BotError):
    """メッセージ処理時のエラー

    ルームイベントハンドラー内で予期しない失敗が起きた場合に使用。
    ログに記録されるだけで、ルームには送信されない。
    """
    pass


class GenerationError(BotError):
    """生成エラー

    LLMの応答ストリーム取得、またはJSON解析に失敗した場合に発生。
    LLMClient内部で捕捉され、「結果なし」として扱われる。
    """
    pass
