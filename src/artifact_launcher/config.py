"""artifact-launcher 环境变量配置管理。

环境变量:
    AL_RUNTIME_HOME_VAR: 指向运行时安装目录的环境变量名
        - 默认 JAVA_HOME
        - 在 $<var>/bin 下依次探测 <name>.exe 与 <name>

    AL_RUNTIME_NAME: 运行时可执行文件基础名
        - 默认 java

    AL_READY_MARKER: 子进程输出中的就绪标记
        - 默认 WFSWARM99999

    AL_READY_REGEX: 是否将就绪标记按正则表达式匹配
        - true/1/yes = 正则
        - false/0/no = 子串 (默认)

    AL_BOOT_TIMEOUT: await_ready 默认超时（秒）
        - 默认 120

    AL_STOP_TIMEOUT: stop 默认优雅退出超时（秒）
        - 默认 10

    AL_KILL_GRACE: 强制 kill 后等待系统回收的时间（秒）
        - 默认 5

    AL_PROPERTY_PREFIXES: with_default_properties() 转发的属性前缀
        - 逗号分割
        - 默认 jboss,swarm,wildfly,maven

    AL_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    AL_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - stop = 优雅停止子进程 (默认)
        - kill = 直接强制终止子进程

    AL_SIGINT_DOUBLE_TAP_WINDOW: 双击升级窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制终止子进程
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "SigintMode"]

DEFAULT_RUNTIME_HOME_VAR = "JAVA_HOME"
DEFAULT_RUNTIME_NAME = "java"
DEFAULT_READY_MARKER = "WFSWARM99999"
DEFAULT_BOOT_TIMEOUT = 120.0
DEFAULT_STOP_TIMEOUT = 10.0
DEFAULT_KILL_GRACE = 5.0
DEFAULT_PROPERTY_PREFIXES = ("jboss", "swarm", "wildfly", "maven")


class SigintMode(Enum):
    """SIGINT 处理模式。

    - STOP: 优雅停止子进程，双击时升级为强制终止
    - KILL: 直接强制终止子进程
    """

    STOP = "stop"
    KILL = "kill"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式。

        Args:
            value: 模式字符串 (stop/kill)

        Returns:
            对应的 SigintMode 枚举值，无效值返回 STOP
        """
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.STOP  # 默认值


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_seconds(
    value: str | None,
    default: float,
    minimum: float = 0.0,
    maximum: float = 3600.0,
) -> float:
    """解析秒数环境变量，无效值回退到默认值，有效值限制在 [minimum, maximum]。"""
    if not value or not value.strip():
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return max(minimum, min(seconds, maximum))


def _parse_prefixes(value: str | None) -> tuple[str, ...]:
    """解析属性前缀列表。

    Args:
        value: 环境变量值，逗号分割

    Returns:
        前缀元组，空值返回默认前缀
    """
    if not value or not value.strip():
        return DEFAULT_PROPERTY_PREFIXES

    prefixes = []
    for item in value.split(","):
        prefix = item.strip()
        if prefix and prefix not in prefixes:
            prefixes.append(prefix)

    return tuple(prefixes) or DEFAULT_PROPERTY_PREFIXES


@dataclass
class Config:
    """artifact-launcher 配置。

    Attributes:
        runtime_home_var: 运行时安装目录环境变量名
        runtime_name: 运行时可执行文件基础名
        ready_marker: 默认就绪标记
        ready_regex: 就绪标记是否为正则表达式
        boot_timeout: await_ready 默认超时（秒）
        stop_timeout: stop 默认优雅超时（秒）
        kill_grace: 强制 kill 后的等待时间（秒）
        property_prefixes: 默认转发的属性前缀
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击升级窗口时间（秒）
    """

    runtime_home_var: str = DEFAULT_RUNTIME_HOME_VAR
    runtime_name: str = DEFAULT_RUNTIME_NAME
    ready_marker: str = DEFAULT_READY_MARKER
    ready_regex: bool = False
    boot_timeout: float = DEFAULT_BOOT_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    kill_grace: float = DEFAULT_KILL_GRACE
    property_prefixes: tuple[str, ...] = field(default=DEFAULT_PROPERTY_PREFIXES)
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.STOP
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(runtime={self.runtime_home_var}/{self.runtime_name}, "
            f"ready_marker={self.ready_marker!r}, "
            f"ready_regex={self.ready_regex}, "
            f"boot_timeout={self.boot_timeout}, "
            f"stop_timeout={self.stop_timeout}, "
            f"kill_grace={self.kill_grace}, "
            f"property_prefixes={','.join(self.property_prefixes)}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "artifact-launcher"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"al_debug_{timestamp}.log"

    return str(log_file.resolve())


def _parse_sigint_mode(value: str | None) -> SigintMode:
    """解析 SIGINT 模式环境变量。"""
    if not value:
        return SigintMode.STOP
    return SigintMode.from_string(value)


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("AL_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        runtime_home_var=(
            os.environ.get("AL_RUNTIME_HOME_VAR", "").strip() or DEFAULT_RUNTIME_HOME_VAR
        ),
        runtime_name=os.environ.get("AL_RUNTIME_NAME", "").strip() or DEFAULT_RUNTIME_NAME,
        ready_marker=os.environ.get("AL_READY_MARKER") or DEFAULT_READY_MARKER,
        ready_regex=_parse_bool(os.environ.get("AL_READY_REGEX"), default=False),
        boot_timeout=_parse_seconds(
            os.environ.get("AL_BOOT_TIMEOUT"), DEFAULT_BOOT_TIMEOUT, minimum=0.1
        ),
        stop_timeout=_parse_seconds(
            os.environ.get("AL_STOP_TIMEOUT"), DEFAULT_STOP_TIMEOUT
        ),
        kill_grace=_parse_seconds(
            os.environ.get("AL_KILL_GRACE"), DEFAULT_KILL_GRACE, minimum=0.1, maximum=60.0
        ),
        property_prefixes=_parse_prefixes(os.environ.get("AL_PROPERTY_PREFIXES")),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=_parse_sigint_mode(os.environ.get("AL_SIGINT_MODE")),
        sigint_double_tap_window=_parse_seconds(
            os.environ.get("AL_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, minimum=0.1, maximum=10.0
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
