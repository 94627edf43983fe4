"""客户端配置模块

从环境变量和 .env 文件加载配置。
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """客户端配置类

    从 .env 文件和环境变量加载配置。
    环境变量优先级高于 .env 文件。
    """

    # ===========================
    # 应用配置
    # ===========================
    APP_ENV: str = "development"  # 应用环境: development, production
    LOG_LEVEL: str = "INFO"  # 日志级别: DEBUG, INFO, WARNING, ERROR, CRITICAL

    # ===========================
    # WebSocket 端点配置
    # ===========================
    WS_URL: str = ""  # 完整地址，设置后忽略下面三项
    WS_HOST: str = "localhost"
    WS_PORT: int = 3001  # 与 REST API 同端口
    WS_PATH: str = "/ws"

    # ===========================
    # 连接与重连配置
    # ===========================
    CONNECT_TIMEOUT: float = 10.0  # 等待进行中的连接的最长时间（秒）
    RECONNECT_BASE_DELAY: float = 1.0  # 首次重连延迟（秒），之后按 2 的幂递增
    RECONNECT_MAX_ATTEMPTS: int = 5  # 连续失败多少次后放弃
    PING_INTERVAL: float = 30.0  # 底层 WebSocket ping 间隔（秒），0 表示关闭

    # ===========================
    # 请求配置
    # ===========================
    REQUEST_TIMEOUT: float = 0  # send_request_async 默认超时（秒），0 表示不限
    SEND_CANCEL_FRAME: bool = True  # 本地取消时是否通知服务器

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"  # 忽略未定义的环境变量
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"LOG_LEVEL 必须是 {valid_levels} 之一")
        return v_upper

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """验证应用环境"""
        valid_envs = ["development", "production"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"APP_ENV 必须是 {valid_envs} 之一")
        return v_lower

    @field_validator("WS_PATH")
    @classmethod
    def validate_ws_path(cls, v: str) -> str:
        """路径统一以 / 开头"""
        return v if v.startswith("/") else f"/{v}"

    @field_validator("RECONNECT_MAX_ATTEMPTS")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("RECONNECT_MAX_ATTEMPTS 不能为负数")
        return v

    @field_validator("CONNECT_TIMEOUT", "RECONNECT_BASE_DELAY")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("超时与延迟必须为正数")
        return v

    def get_ws_url(self) -> str:
        """获取 WebSocket 连接地址"""
        if self.WS_URL:
            return self.WS_URL
        return f"ws://{self.WS_HOST}:{self.WS_PORT}{self.WS_PATH}"

    @property
    def request_timeout(self) -> float | None:
        """None 表示不限时"""
        return self.REQUEST_TIMEOUT or None

    @property
    def is_development(self) -> bool:
        """是否为开发环境"""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """是否为生产环境"""
        return self.APP_ENV == "production"


# 默认配置实例，组件均可显式传入自己的 Settings
settings = Settings()
