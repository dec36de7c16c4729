"""Bot設定管理モジュール

環境変数（および .env）から読み込む項目は最小限にし、
その他は適切なデフォルト値を持つ。
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class BotSettings(BaseSettings):
    """Bot設定クラス

    環境変数から設定を読み込み、型チェックとバリデーションを実行します。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # === 環境変数 ===
    bots_config_path: str = "bots.yaml"
    ollama_host: str = "http://localhost:11434"
    log_level: str = "INFO"

    # === ハードコード定数（環境変数不要） ===
    @property
    def history_limit(self) -> int:
        """ルームごとに保持する会話履歴の最大件数（超えると要約する）"""
        return 30

    @property
    def keep_alive(self) -> int:
        """Ollamaにモデルをメモリ保持させる時間（秒）"""
        return 30 * 60

    @property
    def typing_timeout(self) -> int:
        """タイピング表示の持続時間（ミリ秒）"""
        return 120000

    @property
    def sync_timeout(self) -> int:
        """Matrix syncのロングポーリング時間（ミリ秒）"""
        return 30000


# グローバル設定インスタンス
_settings: BotSettings | None = None


def get_settings() -> BotSettings:
    """設定インスタンスを取得（シングルトン）"""
    global _settings
    if _settings is None:
        _settings = BotSettings()
    return _settings


def reload_settings() -> BotSettings:
    """設定を再読み込み（主にテスト用）"""
    global _settings
    _settings = BotSettings()
    return _settings
