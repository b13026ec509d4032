"""artifact-launcher 命令行入口。

本地运行一个可执行构件：构造命令行、启动、等待就绪，
然后等待子进程退出或 SIGINT/SIGTERM，最后两阶段停止。

用法:
    artifact-launcher run --jar app.jar -D swarm.http.port=8181 -- --extra-arg
    artifact-launcher render --main com.example.Main --classpath lib/a.jar
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import shlex
import sys
from collections.abc import Sequence

import anyio

from .config import get_config
from .errors import AbnormalExitError, LauncherError
from .runtime import (
    AsyncProcessSupervisor,
    LaunchSpec,
    OutputSink,
    launch_async,
    render,
)
from .signal_manager import SignalManager

__all__ = ["build_parser", "build_spec", "run_launcher", "main"]

logger = logging.getLogger(__name__)

EXIT_FORCED = 130  # 128 + SIGINT(2)


def _parse_pair(value: str) -> tuple[str, str]:
    """解析 KEY=VALUE 参数。"""
    name, sep, val = value.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return name, val


def build_parser() -> argparse.ArgumentParser:
    """构建命令行解析器。"""
    config = get_config()

    parser = argparse.ArgumentParser(
        prog="artifact-launcher",
        description="Launch and supervise a runnable server artifact",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    entry = common.add_argument_group("entry point")
    entry.add_argument("--jar", metavar="PATH", help="Self-contained runnable artifact")
    entry.add_argument("--main", metavar="NAME", help="Main entry point name")
    entry.add_argument(
        "--classpath", metavar="ENTRY", action="append", default=[],
        help="Classpath entry (repeatable, or joined with the path separator)",
    )
    common.add_argument("--java", metavar="PATH", help="Runtime binary (default: resolved from the runtime home)")
    common.add_argument(
        "-D", "--property", dest="properties", metavar="KEY=VALUE",
        type=_parse_pair, action="append", default=[], help="System property",
    )
    common.add_argument(
        "--default-properties", action="store_true",
        help="Forward host settings matching AL_PROPERTY_PREFIXES",
    )
    common.add_argument(
        "--env", dest="environment", metavar="KEY=VALUE",
        type=_parse_pair, action="append", default=[], help="Environment variable",
    )
    common.add_argument("--cwd", metavar="DIR", help="Working directory")
    common.add_argument("--debug", metavar="PORT", type=int, help="Remote debugging port")
    common.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the artifact")

    subparsers.add_parser("render", parents=[common], help="Print the command line and exit")

    run = subparsers.add_parser("run", parents=[common], help="Launch and supervise the artifact")
    run.add_argument("--stdout-file", metavar="PATH", help="Capture child stdout to a file")
    run.add_argument("--stderr-file", metavar="PATH", help="Capture child stderr to a file")
    run.add_argument("--quiet", action="store_true", help="Do not pass child output to the console")
    run.add_argument("--ready-marker", default=config.ready_marker, help="Readiness marker text")
    run.add_argument("--ready-regex", action="store_true", default=config.ready_regex,
                     help="Treat the readiness marker as a regular expression")
    run.add_argument("--no-ready", action="store_true", help="Disable readiness detection")
    run.add_argument("--boot-timeout", type=float, default=config.boot_timeout, metavar="SECONDS")
    run.add_argument("--stop-timeout", type=float, default=config.stop_timeout, metavar="SECONDS")
    run.add_argument("--kill-grace", type=float, default=config.kill_grace, metavar="SECONDS")

    return parser


def _sink(path: str | None, quiet: bool) -> OutputSink:
    if path:
        return OutputSink.capture(path) if quiet else OutputSink.both(path)
    return OutputSink.discard() if quiet else OutputSink.inherit()


def build_spec(options: argparse.Namespace) -> LaunchSpec:
    """根据命令行参数构建 LaunchSpec。

    Raises:
        ConfigurationError: 参数互相冲突
    """
    spec = LaunchSpec()

    if options.java:
        spec.with_runtime(options.java)
    if options.default_properties:
        spec.with_default_properties()
    spec.with_properties(dict(options.properties))
    spec.with_environment_map(dict(options.environment))

    for item in options.classpath:
        spec.with_classpath_entries(e for e in item.split(os.pathsep) if e)
    if options.jar:
        spec.with_executable_artifact(options.jar)
    if options.main:
        spec.with_main_entry_point(options.main)

    args = list(options.args)
    if args and args[0] == "--":
        args = args[1:]
    spec.with_arguments(args)

    if options.cwd:
        spec.with_working_directory(options.cwd)
    spec.with_debug(options.debug)

    if options.command == "run":
        spec.with_stdout(_sink(options.stdout_file, options.quiet))
        spec.with_stderr(_sink(options.stderr_file, options.quiet))
        if options.no_ready:
            spec.with_ready_matcher(None)
        else:
            spec.with_ready_marker(options.ready_marker, regex=options.ready_regex)

    return spec


def _exit_status(supervisor: AsyncProcessSupervisor, forced: bool) -> int:
    if forced:
        return EXIT_FORCED
    error = supervisor.last_error()
    if error is None:
        return 0
    if isinstance(error, AbnormalExitError) and error.exit_code > 0:
        return error.exit_code
    return 1


async def run_launcher(options: argparse.Namespace) -> int:
    """启动并监督子进程直到其退出或收到停止信号。

    使用并发任务架构：
    - ready_task / exit_task: 等待子进程就绪、退出
    - shutdown_watcher: 监听信号管理器的停止事件

    Returns:
        进程退出状态
    """
    spec = build_spec(options)
    logger.info(f"Launching {spec}")

    supervisor = await launch_async(
        spec,
        stop_timeout=options.stop_timeout,
        kill_grace=options.kill_grace,
    )
    kill_tasks: set[asyncio.Task] = set()

    def on_kill() -> None:
        task = asyncio.ensure_future(supervisor.kill())
        kill_tasks.add(task)
        task.add_done_callback(kill_tasks.discard)

    signal_manager = SignalManager(on_kill=on_kill)
    pending: set[asyncio.Task] = set()

    try:
        await signal_manager.start()
        shutdown_watcher = asyncio.create_task(
            signal_manager.wait_for_shutdown(), name="shutdown-watcher"
        )
        ready_task = asyncio.create_task(
            supervisor.await_ready(options.boot_timeout), name="await-ready"
        )
        pending = {shutdown_watcher, ready_task}

        done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        if ready_task in done:
            error = ready_task.result()
            if error is not None:
                logger.error(f"Process failed to start: {error}")
            else:
                logger.info(f"Process pid={supervisor.pid} is up ({supervisor.state.value})")
                exit_task = asyncio.create_task(supervisor.wait(), name="await-exit")
                pending.add(exit_task)
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if exit_task in done:
                    logger.warning(f"Process exited with code {exit_task.result()}")

        if shutdown_watcher in done:
            logger.info("Shutdown signal received, stopping child process...")

    finally:
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        with anyio.CancelScope(shield=True):
            try:
                await supervisor.stop(options.stop_timeout)
            except LauncherError as e:
                logger.error(f"Unable to stop process pid={supervisor.pid}: {e}")
            if kill_tasks:
                await asyncio.gather(*kill_tasks, return_exceptions=True)
            await signal_manager.stop()

        logger.info("Final status: %s", supervisor.snapshot())

    return _exit_status(supervisor, signal_manager.is_force_exit)


class JsonSerializingFormatter(logging.Formatter):
    """将 Pydantic 模型参数序列化为 JSON 的格式化器。"""

    def format(self, record: logging.LogRecord) -> str:
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                json.dumps(arg.model_dump(mode="json"), ensure_ascii=False)
                if hasattr(arg, "model_dump") else arg
                for arg in record.args
            )
        return super().format(record)


def configure_logging() -> None:
    """配置日志输出。"""
    config = get_config()
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    handler: logging.Handler
    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        handler = logging.StreamHandler(sys.stderr)
        log_level = logging.INFO
    handler.setFormatter(JsonSerializingFormatter(log_format))

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    # 只对 artifact_launcher 命名空间启用详细日志
    logging.getLogger("artifact_launcher").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> int:
    """主入口点。"""
    configure_logging()
    options = build_parser().parse_args(argv)

    try:
        if options.command == "render":
            command = render(build_spec(options))
            print(" ".join(shlex.quote(arg) for arg in command.argv))
            return 0
        return asyncio.run(run_launcher(options))
    except LauncherError as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
