"""
Shared fixtures for the build-environment tests.

Provides:
- The hyphenated provisioning script loaded as a module
- A recording runner standing in for apt/curl/tar invocations
- Settings and environments rooted in a temporary directory
"""

import importlib.util
import sys
from pathlib import Path

import pytest

from buildenv import BuildEnvironment, CommandResult, Console, TimingsCollector

SCRIPT_PATH = Path(__file__).resolve().parent.parent / "scripts" / "build-sigilwebengine.py"


def _load_build_script():
    spec = importlib.util.spec_from_file_location("build_sigilwebengine", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


class RecordingRunner:
    """Records every command instead of running it.

    ``responses`` maps a step label to the stdout it should report.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def _record(self, mode, label, command, env):
        self.calls.append((mode, label, command, env))
        return CommandResult(exit_code=0, stdout=self.responses.get(label, ""))

    def run(self, label, command, env):
        return self._record("run", label, command, env)

    def retry(self, label, command, env):
        return self._record("retry", label, command, env)

    @property
    def labels(self):
        return [label for _, label, _, _ in self.calls]

    def modes(self):
        return {label: mode for mode, label, _, _ in self.calls}

    def command_for(self, label):
        for _, call_label, command, _ in self.calls:
            if call_label == label:
                return command
        raise KeyError(label)


@pytest.fixture(scope="session")
def build_script():
    return _load_build_script()


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def settings(build_script, tmp_path):
    return build_script.BuildSettings(root=tmp_path / "root")


@pytest.fixture
def empty_bin(tmp_path):
    bin_dir = tmp_path / "host-bin"
    bin_dir.mkdir()
    return bin_dir


@pytest.fixture
def env(settings, empty_bin):
    """Environment whose PATH holds no real tools."""
    return BuildEnvironment.capture(
        {"PATH": str(empty_bin), "HOME": "/root"},
        **settings.base_variables(),
    )


@pytest.fixture
def make_ctx(build_script, settings):
    def factory(runner):
        return build_script.BuildContext(
            settings=settings,
            runner=runner,
            console=Console(),
            timings=TimingsCollector(),
        )

    return factory


@pytest.fixture
def make_executable():
    def factory(path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\nexit 0\n")
        path.chmod(0o755)
        return path

    return factory


@pytest.fixture
def make_runner():
    return RecordingRunner
