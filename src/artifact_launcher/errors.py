"""artifact-launcher 异常类。

配置与启动错误在调用点同步抛出；启动超时与异常退出
通过 Supervisor 状态机（FAILED + last_error()）上报。
"""

from __future__ import annotations

import signal

__all__ = [
    "LauncherError",
    "ConfigurationError",
    "ResolutionError",
    "RuntimeNotFoundError",
    "LaunchError",
    "SupervisorError",
    "DeploymentTimeoutError",
    "AbnormalExitError",
    "StopError",
]


class LauncherError(Exception):
    """artifact-launcher 基础异常。"""
    pass


class ConfigurationError(LauncherError):
    """LaunchSpec 配置无效或互相冲突。"""
    pass


class ResolutionError(LauncherError):
    """无法解析启动所需的外部资源。"""
    pass


class RuntimeNotFoundError(ResolutionError):
    """找不到运行时可执行文件。

    Attributes:
        searched: 已探测过的候选路径
    """

    def __init__(self, message: str, searched: list[str] | None = None) -> None:
        self.searched = list(searched or [])
        super().__init__(message)


class LaunchError(LauncherError):
    """操作系统拒绝启动子进程。

    Attributes:
        argv: 尝试执行的命令行
    """

    def __init__(self, message: str, argv: list[str] | None = None) -> None:
        self.argv = list(argv or [])
        super().__init__(message)


class SupervisorError(LauncherError):
    """子进程生命周期中记录到的失败。"""
    pass


class DeploymentTimeoutError(SupervisorError):
    """在启动超时内未观察到就绪标记。

    超时不会终止子进程，进程可能仍在运行。

    Attributes:
        timeout: 等待的秒数
        pid: 子进程 PID
    """

    def __init__(self, timeout: float, pid: int | None = None) -> None:
        self.timeout = timeout
        self.pid = pid
        super().__init__(
            f"Process pid={pid} did not become ready within {timeout:.1f}s"
        )


class AbnormalExitError(SupervisorError):
    """子进程在预期运行期间退出。

    Attributes:
        exit_code: 退出码（POSIX 上被信号终止时为负的信号编号）
        pid: 子进程 PID
    """

    def __init__(self, exit_code: int, pid: int | None = None, message: str = "") -> None:
        self.exit_code = exit_code
        self.pid = pid
        detail = message or _describe_exit(exit_code)
        super().__init__(f"Process pid={pid} exited unexpectedly: {detail}")


class StopError(LauncherError):
    """强制终止信号无法送达。

    Attributes:
        pid: 子进程 PID
    """

    def __init__(self, message: str, pid: int | None = None) -> None:
        self.pid = pid
        super().__init__(message)


def _describe_exit(exit_code: int) -> str:
    """把 Popen 风格的退出码转成可读文本。"""
    if exit_code < 0:
        try:
            name = signal.Signals(-exit_code).name
        except ValueError:
            name = f"signal {-exit_code}"
        return f"killed by {name}"
    return f"exit code {exit_code}"
