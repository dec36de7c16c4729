"""
ペルソナ設定ファイルの読み込みと管理を行うモジュール
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from roombot.aliases import RegexAlias, compile_message_aliases
from roombot.exceptions import ConfigurationError
from roombot.models import RespondPolicy

logger = logging.getLogger(__name__)


class PersonaConfig(BaseModel):
    """ペルソナ情報を保持するモデル（読み込み後は不変）"""

    model_config = ConfigDict(frozen=True, extra="ignore")

    model: str
    homeserver_url: str
    user_id: str
    access_token: Optional[str] = None
    username: str
    password: str = ""
    reactions: bool = False
    respond: RespondPolicy = "mentioned"
    aliases: Dict[str, str] = {}
    message_aliases: Dict[str, str] = {}
    system_prompts: List[str] = []

    @field_validator("message_aliases")
    @classmethod
    def _check_message_aliases(cls, value: Dict[str, str]) -> Dict[str, str]:
        for pattern in value:
            try:
                compiled = re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid regex {pattern!r}: {e}") from e
            if compiled.groups < 1:
                raise ValueError(f"regex {pattern!r} must have a capture group")
        return value

    @property
    def rewrite_rules(self) -> List[RegexAlias]:
        """メッセージ書き換えルール（宣言順）"""
        return compile_message_aliases(self.message_aliases)


class PersonaLoader:
    """ペルソナ設定ファイルを読み込み・管理するクラス"""

    def __init__(self, config_path: str = "bots.yaml") -> None:
        """
        Args:
            config_path: ペルソナ設定ファイル（YAMLまたはJSON）のパス
        """
        self.config_path: Path = Path(config_path)
        self._data: Dict[str, Any] = {}
        self._personas: Dict[str, PersonaConfig] = {}
        self._load_all_personas()

    def _load_all_personas(self) -> None:
        """設定ファイル内のすべてのペルソナを読み込む

        Raises:
            ConfigurationError: ファイルが無い、形式が不正、またはuser_idが重複している場合
        """
        if not self.config_path.exists():
            raise ConfigurationError(
                f"Bots config not found: {self.config_path}",
                details={"path": str(self.config_path)},
            )

        with open(self.config_path, "r", encoding="utf-8") as f:
            try:
                data: Any = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Invalid YAML in {self.config_path}",
                    details={"path": str(self.config_path)},
                ) from e

        if not isinstance(data, dict) or not isinstance(data.get("bots"), list):
            raise ConfigurationError(
                f"Invalid config format in {self.config_path}: expected a 'bots' list"
            )

        for i, entry in enumerate(data["bots"]):
            try:
                persona = PersonaConfig.model_validate(entry)
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid bot {i} in {self.config_path}: {e}",
                    details={"index": i},
                ) from e

            if persona.user_id in self._personas:
                raise ConfigurationError(
                    f"Multiple bots with user_id {persona.user_id}",
                    details={"user_id": persona.user_id},
                )
            self._personas[persona.user_id] = persona

        self._data = data
        logger.info(
            "Personas loaded",
            extra={"path": str(self.config_path), "count": len(self._personas)},
        )

    def get_persona(self, user_id: str) -> Optional[PersonaConfig]:
        """user_idからペルソナを取得"""
        return self._personas.get(user_id)

    def get_all_personas(self) -> Dict[str, PersonaConfig]:
        """すべてのペルソナを取得"""
        return self._personas.copy()

    def list_persona_ids(self) -> List[str]:
        """読み込んだペルソナのuser_idリストを取得"""
        return list(self._personas.keys())

    def set_access_token(self, user_id: str, access_token: str) -> PersonaConfig:
        """アカウント登録で得たアクセストークンを記録し、設定ファイルに書き戻す

        Args:
            user_id: ペルソナのuser_id
            access_token: 発行されたアクセストークン

        Returns:
            トークンを反映したペルソナ
        """
        persona = self._personas[user_id].model_copy(update={"access_token": access_token})
        self._personas[user_id] = persona

        for entry in self._data["bots"]:
            if entry.get("user_id") == user_id:
                entry["access_token"] = access_token
        self.save()

        return persona

    def save(self) -> None:
        """設定ファイルを書き戻す（拡張子が .json ならJSON、それ以外はYAML）"""
        with open(self.config_path, "w", encoding="utf-8") as f:
            if self.config_path.suffix == ".json":
                json.dump(self._data, f, ensure_ascii=False, indent=2)
            else:
                yaml.safe_dump(self._data, f, allow_unicode=True, sort_keys=False)

        logger.info("Bots config saved", extra={"path": str(self.config_path)})


# グローバルなペルソナローダーインスタンス
_persona_loader: Optional[PersonaLoader] = None


def get_persona_loader(config_path: Optional[str] = None) -> PersonaLoader:
    """
    グローバルなペルソナローダーインスタンスを取得
    （シングルトンパターン）
    """
    global _persona_loader
    if _persona_loader is None:
        from roombot.config import get_settings

        _persona_loader = PersonaLoader(config_path or get_settings().bots_config_path)
    return _persona_loader
