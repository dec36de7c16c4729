"""Bot イベントハンドラーモジュール

このモジュールは、Botのビジネスロジックを管理します。
PersonaBotクラスからロジックを分離します。

Modules:
    message_handler: ルームメッセージイベントのビジネスロジック
"""

from roombot.handlers.message_handler import MessageHandler

__all__ = ["MessageHandler"]
