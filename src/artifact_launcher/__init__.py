"""artifact-launcher - 本地启动并监督可运行的服务端构件。

环境变量:
    AL_RUNTIME_HOME_VAR: 运行时安装目录环境变量名（默认 JAVA_HOME）
    AL_READY_MARKER: 就绪标记（默认 WFSWARM99999）
    AL_BOOT_TIMEOUT / AL_STOP_TIMEOUT / AL_KILL_GRACE: 超时设置（秒）
    AL_LOG_DEBUG: 日志输出到临时文件

用法:
    artifact-launcher run --jar app.jar -D swarm.http.port=8181
"""

__version__ = "0.1.0"

from .app import main
from .runtime import (
    AsyncProcessSupervisor,
    LaunchSpec,
    OutputSink,
    ProcessSupervisor,
    SupervisorState,
    launch,
    launch_async,
    render,
)

__all__ = [
    "__version__",
    "main",
    "AsyncProcessSupervisor",
    "LaunchSpec",
    "OutputSink",
    "ProcessSupervisor",
    "SupervisorState",
    "launch",
    "launch_async",
    "render",
]
