"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import stat
import sys
from pathlib import Path
from unittest import mock

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 测试用的假服务端脚本
FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_server.py"

IS_WINDOWS = sys.platform == "win32"


@pytest.fixture(autouse=True)
def clean_config():
    """每个测试使用不含 AL_* 变量的全新配置。"""
    from artifact_launcher.config import reload_config

    env = {k: v for k, v in os.environ.items() if not k.startswith("AL_")}
    with mock.patch.dict(os.environ, env, clear=True):
        reload_config()
        yield
    reload_config()


@pytest.fixture
def fake_server() -> Path:
    """假服务端脚本路径。"""
    return FAKE_SERVER


@pytest.fixture
def fake_runtime(tmp_path: Path) -> Path:
    """模拟运行时二进制：把运行时风格的参数转交给 fake_server.py。"""
    if IS_WINDOWS:
        pytest.skip("Runtime wrapper script requires POSIX sh")

    wrapper = tmp_path / "bin" / "java"
    wrapper.parent.mkdir(parents=True)
    wrapper.write_text(
        f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_SERVER}" "$@"\n',
        encoding="utf-8",
    )
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


@pytest.fixture
def runtime_home(fake_runtime: Path) -> Path:
    """包含 bin/java 的运行时安装目录。"""
    return fake_runtime.parent.parent


@pytest.fixture(autouse=True)
def restore_logging_state():
    """恢复 app.main() 的 configure_logging 修改过的日志状态，避免测试间泄漏。"""
    import logging

    root = logging.getLogger()
    pkg_logger = logging.getLogger("artifact_launcher")
    root_level, root_handlers = root.level, list(root.handlers)
    pkg_level = pkg_logger.level
    yield
    for handler in root.handlers:
        if handler not in root_handlers:
            root.removeHandler(handler)
    root.setLevel(root_level)
    pkg_logger.setLevel(pkg_level)
