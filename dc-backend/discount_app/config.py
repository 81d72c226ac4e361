"""
配置管理模块
"""
import logging
from typing import List
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("json", "sql", "memory")


class Settings(BaseSettings):
    """服务配置"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DISCOUNT_",
        extra="ignore",
    )
    # 监听地址
    host: str = "0.0.0.0"
    port: int = 5001

    # 存储
    store_backend: str = "json"  # json / sql / memory
    codes_file: str = "discountCodes.json"
    database_url: str = "sqlite+aiosqlite:///discount_codes.db"

    # 协议层准入限制
    max_generate_count: int = 2000
    allowed_code_lengths: str = "7,8"

    # 环境
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = True

    # Metrics
    metrics_enabled: bool = False
    metrics_port: int = 9101

    # Sentry
    sentry_dsn: str = ""
    sentry_traces_sample_rate: float = 0.1

    @property
    def code_lengths(self) -> List[int]:
        """解析允许的兑换码长度"""
        if not self.allowed_code_lengths:
            return []
        return [int(item.strip()) for item in self.allowed_code_lengths.split(",") if item.strip()]

    def is_production(self) -> bool:
        """是否生产环境"""
        return self.environment.lower() == "production"

    def validate_settings(self) -> None:
        """
        启动前校验配置项
        """
        problems: List[str] = []

        if not 0 <= self.port <= 65535:
            problems.append(f"PORT 超出范围: {self.port}")
        if self.store_backend not in STORE_BACKENDS:
            problems.append(f"STORE_BACKEND 无效: {self.store_backend}")
        if self.max_generate_count <= 0 or self.max_generate_count > 0xFFFF:
            problems.append(f"MAX_GENERATE_COUNT 必须在 1..65535 之间: {self.max_generate_count}")

        try:
            lengths = self.code_lengths
        except ValueError:
            problems.append(f"ALLOWED_CODE_LENGTHS 格式无效: {self.allowed_code_lengths}")
        else:
            if not lengths:
                problems.append("ALLOWED_CODE_LENGTHS 不能为空")
            elif any(length < 1 or length > 255 for length in lengths):
                problems.append("ALLOWED_CODE_LENGTHS 必须在 1..255 之间")

        if self.is_production() and self.store_backend == "memory":
            problems.append("生产环境不能使用 memory 存储")

        if problems:
            raise RuntimeError("配置无效: " + "; ".join(problems))


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
