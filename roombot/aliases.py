"""送信者エイリアス解決

送信者IDから表示ラベルを決め、正規表現ルールでメッセージを書き換えます。
副作用のない純粋関数です。
"""

import re
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from roombot.models import ChatMessage

# "@local:server" のローカル部
SENDER_PATTERN = re.compile(r"^@([^:]+):")

EMOTE_MSGTYPE = "m.emote"

_QUOTES = str.maketrans({
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
})


@dataclass(frozen=True)
class RegexAlias:
    """メッセージ書き換えルール"""
    regex: re.Pattern[str]
    alias: str


def compile_message_aliases(message_aliases: Mapping[str, str]) -> list[RegexAlias]:
    """設定の {正規表現: エイリアス} を宣言順にコンパイル"""
    return [
        RegexAlias(regex=re.compile(pattern), alias=alias)
        for pattern, alias in message_aliases.items()
    ]


def sender_label(sender: str, aliases: Mapping[str, str]) -> Optional[str]:
    """送信者IDからラベルを導出

    Args:
        sender: 送信者ID（例: "@alice:example.org"）
        aliases: 送信者ID -> ラベルの上書きテーブル

    Returns:
        ラベル（導出できない場合はNone）
    """
    match = SENDER_PATTERN.match(sender)
    label = match.group(1) if match else None
    return aliases.get(sender) or label


def resolve_message(
    sender: str,
    body: str,
    msgtype: str,
    aliases: Mapping[str, str],
    message_aliases: Sequence[RegexAlias] = (),
) -> Optional[ChatMessage]:
    """受信イベントをチャットメッセージに変換

    Args:
        sender: 送信者ID
        body: メッセージ本文
        msgtype: メッセージ種別（"m.text" or "m.emote"）
        aliases: 送信者ID -> ラベルの上書きテーブル
        message_aliases: 書き換えルール（宣言順）

    Returns:
        チャットメッセージ（送信者が不正な場合はNone）
    """
    label = sender_label(sender, aliases)
    if not label:
        return None

    message: ChatMessage = {"from": label, "message": body.translate(_QUOTES)}

    # 最初にマッチしたルールのみ適用
    for rule in message_aliases:
        match = rule.regex.search(message["message"])
        if match and rule.regex.groups and match.group(1):
            message["message"] = match.group(1)
            message["from"] = rule.alias
            break

    if msgtype == EMOTE_MSGTYPE:
        message["message"] = f"*{message['from']} {message['message']}"

    return message
