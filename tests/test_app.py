"""命令行入口测试。

测试参数解析、LaunchSpec 构建、render 子命令和 run 子命令的退出码。
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from unittest import mock

import pytest

from artifact_launcher import app
from artifact_launcher.errors import ConfigurationError
from artifact_launcher.runtime import SinkMode
from artifact_launcher.signal_manager import SignalManager

IS_WINDOWS = sys.platform == "win32"


def parse(*argv: str):
    return app.build_parser().parse_args(list(argv))


class TestBuildSpec:
    """测试从命令行参数构建 LaunchSpec。"""

    def test_artifact_with_properties(self):
        """构件、属性、环境变量和附加参数。"""
        options = parse(
            "render", "--java", "/opt/java", "--jar", "app.jar",
            "-D", "swarm.http.port=8181", "--env", "APP_MODE=test",
            "--debug", "8787", "--", "--flag",
        )
        spec = app.build_spec(options)

        assert spec.runtime_path == Path("/opt/java")
        assert spec.executable_artifact == Path("app.jar")
        assert spec.properties == {"swarm.http.port": "8181"}
        assert spec.environment == {"APP_MODE": "test"}
        assert spec.debug_port == 8787
        assert spec.arguments == ["--flag"]

    def test_classpath_split(self):
        """classpath 参数按路径分隔符拆分。"""
        options = parse(
            "render", "--classpath", f"a.jar{os.pathsep}b.jar", "--classpath", "c.jar",
        )
        spec = app.build_spec(options)
        assert [p.name for p in spec.classpath] == ["a.jar", "b.jar", "c.jar"]

    def test_conflicting_entry_points(self):
        """构件与 classpath 冲突。"""
        options = parse("render", "--jar", "app.jar", "--classpath", "a.jar")
        with pytest.raises(ConfigurationError):
            app.build_spec(options)

    def test_invalid_property(self):
        """属性必须是 KEY=VALUE。"""
        with pytest.raises(SystemExit):
            parse("render", "--jar", "app.jar", "-D", "novalue")

    def test_default_properties(self):
        """转发匹配前缀的宿主环境变量。"""
        with mock.patch.dict(os.environ, {"swarm.debug": "true"}):
            spec = app.build_spec(parse("render", "--main", "Main", "--default-properties"))
        assert spec.properties["swarm.debug"] == "true"

    def test_run_sinks(self, tmp_path: Path):
        """run 子命令的输出目标。"""
        out = tmp_path / "out.log"
        spec = app.build_spec(parse("run", "--main", "Main", "--stdout-file", str(out)))
        assert spec.stdout_sink.mode == SinkMode.BOTH
        assert spec.stderr_sink.mode == SinkMode.INHERIT

        spec = app.build_spec(parse("run", "--main", "Main", "--quiet", "--stdout-file", str(out)))
        assert spec.stdout_sink.mode == SinkMode.CAPTURE
        assert spec.stderr_sink.mode == SinkMode.DISCARD

    def test_run_readiness(self):
        """就绪标记设置。"""
        spec = app.build_spec(parse("run", "--main", "Main", "--ready-marker", "UP.*", "--ready-regex"))
        assert spec.ready_matcher.is_regex
        assert spec.ready_matcher.pattern == "UP.*"

        spec = app.build_spec(parse("run", "--main", "Main", "--no-ready"))
        assert spec.ready_matcher is None


class TestRenderCommand:
    """测试 render 子命令。"""

    def test_prints_command_line(self, capsys):
        """打印经过 shell 转义的命令行。"""
        code = app.main(["render", "--java", "/opt/java", "--main", "com.example.Main", "--", "a b"])
        assert code == 0
        assert capsys.readouterr().out.strip() == "/opt/java com.example.Main 'a b'"

    def test_configuration_error(self):
        """配置错误返回 2。"""
        assert app.main(["render", "--java", "/opt/java"]) == 2

    def test_runtime_not_found(self):
        """找不到运行时返回 2。"""
        os.environ.pop("JAVA_HOME", None)
        assert app.main(["render", "--main", "Main"]) == 2


@pytest.mark.integration
@pytest.mark.skipif(IS_WINDOWS, reason="POSIX runtime wrapper")
class TestRunCommand:
    """测试 run 子命令的退出码。"""

    def run_args(self, runtime: Path, *extra: str) -> list[str]:
        return [
            "run", "--java", str(runtime), "--main", "com.example.Main",
            "--quiet", "--boot-timeout", "10", "--stop-timeout", "2", "--kill-grace", "2",
            *extra,
        ]

    @pytest.mark.timeout(30)
    def test_boot_failure_exit_code(self, fake_runtime: Path):
        """启动前退出时返回子进程退出码。"""
        argv = self.run_args(
            fake_runtime, "--", "--no-ready", "--exit-after", "0.05", "--exit-code", "3"
        )
        assert app.main(argv) == 3

    @pytest.mark.timeout(30)
    def test_exit_after_deploy(self, fake_runtime: Path):
        """就绪后意外退出返回子进程退出码。"""
        argv = self.run_args(fake_runtime, "--", "--exit-after", "0.5", "--exit-code", "7")
        assert app.main(argv) == 7

    @pytest.mark.timeout(30)
    def test_boot_timeout(self, fake_runtime: Path):
        """启动超时返回 1 并停止子进程。"""
        argv = self.run_args(fake_runtime, "--", "--no-ready")
        argv[argv.index("--boot-timeout") + 1] = "0.3"
        assert app.main(argv) == 1

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_graceful_shutdown(self, fake_runtime: Path, tmp_path: Path):
        """停止请求后优雅停止并返回 0。"""
        managers: list[SignalManager] = []

        class CapturingSignalManager(SignalManager):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                managers.append(self)

        stdout_file = tmp_path / "out.log"
        options = app.build_parser().parse_args(
            self.run_args(fake_runtime, "--stdout-file", str(stdout_file))
        )
        with mock.patch.object(app, "SignalManager", CapturingSignalManager):
            task = asyncio.create_task(app.run_launcher(options))
            while "WFSWARM99999" not in (stdout_file.read_text() if stdout_file.exists() else ""):
                await asyncio.sleep(0.05)
            managers[0].request_graceful_shutdown()
            code = await task

        assert code == 0
        assert "stopping" in stdout_file.read_text()

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_forced_shutdown(self, fake_runtime: Path, tmp_path: Path):
        """强制终止返回 130。"""
        managers: list[SignalManager] = []

        class CapturingSignalManager(SignalManager):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                managers.append(self)

        stdout_file = tmp_path / "out.log"
        options = app.build_parser().parse_args(
            self.run_args(fake_runtime, "--stdout-file", str(stdout_file), "--", "--ignore-term")
        )
        with mock.patch.object(app, "SignalManager", CapturingSignalManager):
            task = asyncio.create_task(app.run_launcher(options))
            while "WFSWARM99999" not in (stdout_file.read_text() if stdout_file.exists() else ""):
                await asyncio.sleep(0.05)
            managers[0]._force_shutdown()
            code = await task

        assert code == 130
