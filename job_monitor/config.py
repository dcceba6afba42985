"""
配置加载模块

从 config.yaml 加载配置，支持 Pydantic 验证和环境变量覆盖。
"""

import socket
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Target

# 对端刷新间隔下限（秒）
MIN_PEER_REFRESH_SECONDS = 15


class ConfigError(Exception):
    """配置文件无法读取或校验失败"""


class PeerConfig(BaseModel):
    """对端节点配置"""
    id: str = ""
    name: str = ""
    base_url: str = ""
    api_key: str = ""
    enabled: bool = True


class ConnectivityConfig(BaseModel):
    """连通性探测配置"""
    enabled: bool = False
    target: str = "1.1.1.1"
    interval_seconds: int = 60
    timeout_seconds: int = 4


class APIConfig(BaseModel):
    """API 服务配置"""
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: List[str] = ["http://localhost:8080", "http://127.0.0.1:8080"]
    node_token: str = ""  # 非空时 /api/node/* 需要 Bearer Token


class LoggingConfig(BaseModel):
    """日志配置"""
    level: str = "INFO"
    file: Optional[str] = None


def _default_node_id() -> str:
    return socket.gethostname() or "jobmonitor-local"


class AppConfig(BaseModel):
    """应用配置（完整配置）"""
    node_id: str = Field(default_factory=_default_node_id)
    node_name: str = ""
    interval_minutes: int = 5
    data_directory: str = ".dist/data"
    peer_refresh_seconds: int = 60
    peer_history_range: str = "30d"
    peer_history_limit: int = 10000
    peer_timeout_seconds: float = 10.0
    targets: List[Target] = Field(default_factory=list)
    peers: List[PeerConfig] = Field(default_factory=list)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def history_path(self) -> Path:
        return Path(self.data_directory) / "status_history.json"

    @property
    def connectivity_path(self) -> Path:
        return Path(self.data_directory) / "connectivity_history.json"

    @property
    def peer_refresh(self) -> int:
        """对端刷新间隔（不低于 15 秒）"""
        return max(self.peer_refresh_seconds, MIN_PEER_REFRESH_SECONDS)

    def enabled_peers(self) -> List[PeerConfig]:
        return [peer for peer in self.peers if peer.enabled]


class EnvSettings(BaseSettings):
    """环境变量覆盖（前缀 JOB_MONITOR_）"""
    model_config = SettingsConfigDict(env_prefix="JOB_MONITOR_")

    config_path: str = "config.yaml"
    host: Optional[str] = None
    port: Optional[int] = None


def validate_config(config: AppConfig) -> AppConfig:
    """
    补全默认值并校验

    Raises:
        ConfigError: 缺少目标或对端配置不完整
    """
    if config.interval_minutes <= 0:
        config.interval_minutes = 5
    if not config.data_directory:
        config.data_directory = ".dist/data"
    if not config.node_id:
        config.node_id = _default_node_id()
    if not config.node_name:
        config.node_name = config.node_id
    if config.peer_refresh_seconds <= 0:
        config.peer_refresh_seconds = 60

    if not config.targets:
        raise ConfigError("configuration must define at least one target")
    seen = set()
    for target in config.targets:
        if not target.id.strip():
            raise ConfigError("each target must define an id")
        if target.id in seen:
            raise ConfigError(f"duplicate target id: {target.id}")
        seen.add(target.id)
        if not target.service and not target.url:
            raise ConfigError(f"target {target.id} must define a service or url")

    for index, peer in enumerate(config.peers):
        if not peer.enabled:
            continue
        if not peer.id:
            raise ConfigError(f"peer {index} is missing id")
        if not peer.base_url:
            raise ConfigError(f"peer {peer.id} base_url is required")
    return config


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置文件

    优先级：
    1. 参数指定的路径
    2. 环境变量 JOB_MONITOR_CONFIG_PATH
    3. 默认路径 config.yaml

    配置文件不存在时使用默认配置（单个示例目标）。
    """
    env = EnvSettings()
    if config_path is None:
        config_path = env.config_path

    config_file = Path(config_path)
    raw_config = {}
    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"read config {config_file}: {e}") from e
        if not isinstance(raw_config, dict):
            raise ConfigError(f"config {config_file} must be a mapping")

        # 相对路径按配置文件所在目录解析，避免依赖 CWD
        data_dir = raw_config.get("data_directory")
        if data_dir and not Path(data_dir).is_absolute():
            raw_config["data_directory"] = str((config_file.resolve().parent / data_dir).resolve())
    else:
        raw_config = {
            "targets": [
                {"id": "example", "name": "Example Service (ssh)", "service": "ssh", "timeout_seconds": 10}
            ]
        }

    try:
        config = AppConfig(**raw_config)
    except ValidationError as e:
        raise ConfigError(f"parse config {config_file}: {e}") from e

    if env.host:
        config.api.host = env.host
    if env.port:
        config.api.port = env.port
    return validate_config(config)


# 全局配置实例（延迟加载）
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """获取全局配置实例（单例模式）"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config():
    """重置配置（主要用于测试）"""
    global _config
    _config = None
