"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- load_config: 合并命令行覆盖项后构造 Config
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.check_positive: 校验数值型配置
- Config.check_validity_window: 校验剩余有效期下限与证书有效期的关系
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Tuple

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    # 证书与密钥的写入位置，缺少 scheme 时按本地文件路径处理
    destination: str = "outputs/system"
    # 读取已有证书的位置，为空时与 destination 相同
    source: str = ""
    force_regen: bool = False
    overwrite: bool = True
    rsa_key_size: int = 2048
    certificate_validity_days: int = 3650
    min_remaining_validity_days: int = 10
    cluster_domain: str = "cluster.local"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="KUBESSL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("rsa_key_size", "certificate_validity_days")
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("必须为正整数")
        return value

    @field_validator("cluster_domain")
    @classmethod
    def strip_domain(cls, value: str) -> str:
        """去掉首尾的点，空值回退为 cluster.local。"""
        value = value.strip().strip(".")
        return value or "cluster.local"

    @model_validator(mode="after")
    def check_validity_window(self) -> "Config":
        """剩余有效期下限必须小于证书有效期，否则每次运行都会判定新证书即将过期。"""
        if not 0 <= self.min_remaining_validity_days < self.certificate_validity_days:
            raise ValueError(
                "min_remaining_validity_days 必须满足 0 <= min_remaining_validity_days < certificate_validity_days"
            )
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, ValueError):
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, False
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_config(**overrides: Any) -> Config:
    """构造配置，值为 None 的覆盖项会被忽略，以便回退到环境变量与配置文件。"""
    return Config(**{k: v for k, v in overrides.items() if v is not None})
