"""
配置模块 (Configuration Module)
==============================

从环境变量和 .env 文件加载应用配置，包括 OpenAI API、重试、并发与节流等设置。
"""

from typing import Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

from labsupply.errors import ConfigurationError

load_dotenv()


class Settings(BaseSettings):
    """
    应用配置类，继承自 Pydantic BaseSettings，支持从环境变量自动加载。

    属性:
        OPENAI_BASE_URL: OpenAI 兼容 API 基础 URL
        OPENAI_API_KEY: API 密钥（必填，缺失时启动失败）
        OPENAI_VISION_MODEL: 用于标签识别的视觉模型
        TEMPERATURE: 生成温度，0 表示确定性输出
        REQUEST_TIMEOUT: 单次 HTTP 请求超时秒数
        EXTRACTION_TIMEOUT: 单个图片提取（含重试）的总超时秒数，必须大于 0
        LLM_RETRY_*: 重试相关配置
        CONCURRENCY_LIMIT: 同时进行中的提取请求上限
        PAUSE_THRESHOLD: 每完成多少个请求后进入冷却，0 表示不冷却
        PAUSE_DURATION: 冷却时长（单位数）
        PAUSE_TICK_SECONDS: 每个冷却单位对应的秒数
        SESSION_IDLE_SECONDS: 网页会话无活动多久后释放其队列（秒）
    """
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_API_KEY: str = ""
    OPENAI_VISION_MODEL: str = "gpt-4o-mini"
    TEMPERATURE: float = 0.0
    REQUEST_TIMEOUT: int = 60
    EXTRACTION_TIMEOUT: float = 120.0
    LLM_RETRY_MAX_ATTEMPTS: int = 3
    LLM_RETRY_MIN_WAIT_SECONDS: float = 2.0
    LLM_RETRY_MAX_WAIT_SECONDS: float = 10.0
    LLM_RETRY_BACKOFF_MULTIPLIER: float = 1.0
    CONCURRENCY_LIMIT: int = 2
    PAUSE_THRESHOLD: int = 8
    PAUSE_DURATION: int = 70
    PAUSE_TICK_SECONDS: float = 1.0
    MAX_IMAGE_SIZE_MB: int = 20
    EXPORT_FILENAME: str = "LabSupplyData.xlsx"
    EXPORT_SHEET_NAME: str = "Lab Supplies"
    SESSION_IDLE_SECONDS: float = 1800.0
    LOG_LEVEL: str = "INFO"

    @field_validator("OPENAI_API_KEY")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        """
        校验 OPENAI_API_KEY 已设置且非空。

        若未配置则抛出 ValueError，提示用户检查 .env 文件。
        """
        if v is None or v.strip() == "":
            raise ValueError(
                "OPENAI_API_KEY is not set or empty. "
                "Please check your .env file and ensure OPENAI_API_KEY is configured."
            )
        return v

    @field_validator("CONCURRENCY_LIMIT", "LLM_RETRY_MAX_ATTEMPTS", "MAX_IMAGE_SIZE_MB")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("PAUSE_THRESHOLD", "PAUSE_DURATION")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("PAUSE_TICK_SECONDS")
    @classmethod
    def validate_non_negative_seconds(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("EXTRACTION_TIMEOUT", "SESSION_IDLE_SECONDS")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局单例，避免重复加载配置
_settings_instance: Optional[Settings] = None


def load_settings(**overrides) -> Settings:
    """
    创建 Settings 实例，将校验失败转换为 ConfigurationError。

    缺少 API 密钥属于致命的启动错误，调用方应终止应用。
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc


def get_settings() -> Settings:
    """
    获取配置单例。

    首次调用时创建 Settings 实例并缓存，后续调用返回同一实例。
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = load_settings()
    return _settings_instance


def reset_settings() -> None:
    """重置配置单例（测试或环境变量变更后使用）。"""
    global _settings_instance
    _settings_instance = None
