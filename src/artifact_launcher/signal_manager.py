"""信号管理模块。

本地运行时，把发给 launcher 本身的 OS 信号转换为对子进程的操作：
- SIGINT: 优雅停止子进程（双击时升级为强制终止）
- SIGTERM: 优雅停止子进程

支持的配置：
- AL_SIGINT_MODE: stop | kill
- AL_SIGINT_DOUBLE_TAP_WINDOW: 双击升级窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import SigintMode, get_config

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    管理 SIGINT 和 SIGTERM 信号的处理：
    - 第一次 SIGINT / SIGTERM 请求优雅停止
    - 双击窗口内的第二次 SIGINT（或 mode=kill）请求强制终止

    Example:
        ```python
        signal_manager = SignalManager(on_stop=request_stop, on_kill=request_kill)

        async def main():
            await signal_manager.start()
            try:
                await signal_manager.wait_for_shutdown()
            finally:
                await signal_manager.stop()
        ```

    Attributes:
        sigint_mode: SIGINT 处理模式
        double_tap_window: 双击升级窗口时间（秒）
    """

    def __init__(
        self,
        on_stop: Optional[Callable[[], None]] = None,
        on_kill: Optional[Callable[[], None]] = None,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            on_stop: 请求优雅停止时的回调
            on_kill: 请求强制终止时的回调
            sigint_mode: SIGINT 处理模式（默认从配置读取）
            double_tap_window: 双击升级窗口时间（默认从配置读取）
        """
        config = get_config()
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_stop = on_stop
        self._on_kill = on_kill

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler: Optional[signal.Handlers] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求停止。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制终止。"""
        return self._force_exit

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (mode={self.sigint_mode.value}, "
                f"double_tap_window={self.double_tap_window}s)"
            )
        else:
            # Windows: 使用 signal.signal() 设置处理器
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug(
                f"SIGINT handler installed on Windows (mode={self.sigint_mode.value})"
            )

    async def stop(self) -> None:
        """停止信号监听，恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except (ValueError, RuntimeError) as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            signal.signal(signal.SIGINT, self._original_sigint_handler)

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待停止信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - mode=kill: 直接强制终止
        - mode=stop: 请求优雅停止；双击窗口内再次收到则强制终止
        """
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if self.sigint_mode == SigintMode.KILL:
            logger.info("SIGINT received (mode=kill), killing child process")
            self._force_shutdown()
            return

        if self._shutdown_requested:
            if time_since_last < self.double_tap_window:
                logger.warning("Double SIGINT detected, forcing shutdown")
                self._force_shutdown()
            else:
                logger.info(
                    f"Stop already in progress. Press Ctrl+C twice within "
                    f"{self.double_tap_window}s to kill the child process."
                )
            return

        logger.info("SIGINT received (mode=stop), requesting graceful stop")
        self._request_shutdown()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：始终进入优雅停止流程。"""
        logger.info("SIGTERM received, initiating graceful stop")
        if not self._shutdown_requested:
            self._request_shutdown()

    def _request_shutdown(self) -> None:
        """请求优雅停止。"""
        self._shutdown_requested = True
        self._invoke(self._on_stop, "stop")
        self._set_event()

    def _force_shutdown(self) -> None:
        """请求强制终止。

        实际的进程退出由 run_launcher() 在清理完成后执行。
        """
        logger.warning("Forcing immediate shutdown")
        self._force_exit = True
        self._shutdown_requested = True
        self._invoke(self._on_kill, "kill")
        self._set_event()

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅停止。"""
        logger.info("Programmatic shutdown requested")
        self._request_shutdown()

    def _invoke(self, callback: Optional[Callable[[], None]], label: str) -> None:
        if callback is None:
            return
        try:
            callback()
        except Exception as e:
            logger.warning(f"Error in {label} callback: {e}")

    def _set_event(self) -> None:
        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)
