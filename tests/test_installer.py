from __future__ import annotations

import threading
import time

import pytest

from botharbor.errors import DependencyInstallError
from botharbor.installer import BUILD_STEP, DependencyInstaller
from botharbor.logstore import LogStream
from botharbor.tasks import CancelToken, DeploymentCancelled


class Recorder:
    def __init__(self):
        self.lines: list[tuple[LogStream, str]] = []

    def __call__(self, stream, message):
        self.lines.append((stream, message))

    @property
    def messages(self) -> list[str]:
        return [m for _, m in self.lines]


def _installer(make_config, **kwargs):
    config = make_config(**kwargs)
    return DependencyInstaller(config), config


def test_happy_path_skips_fallbacks(make_config, fake_npm, tmp_path):
    installer, _ = _installer(make_config)
    log = Recorder()

    results = installer.install(tmp_path, {"name": "x"}, log)

    assert [r.step.name for r in results] == ["cache", "install", "audit"]
    assert all(r.ok for r in results)
    assert fake_npm().calls == ["cache", "install", "audit"]
    assert "No build script found in package.json. Skipping build step." in log.messages
    assert "Installing dependencies (npm install) completed successfully." in log.messages
    assert "Checking Node.js version..." in log.messages


def test_failed_install_recovers_with_legacy_peer_deps(make_config, fake_npm, tmp_path):
    installer, _ = _installer(make_config, fail={"install"})
    log = Recorder()

    installer.install(tmp_path, {}, log)

    assert "Installing dependencies (npm install) failed with code 1." in log.messages
    assert "Recovered from failed install step using: Installing with legacy peer dependencies" in log.messages
    calls = fake_npm().calls
    assert calls == ["cache", "install", "legacy", "audit"]


def test_second_fallback_is_tried_when_the_first_fails(make_config, fake_npm, tmp_path):
    installer, _ = _installer(make_config, fail={"install", "legacy"})
    log = Recorder()

    installer.install(tmp_path, {}, log)

    assert "Recovered from failed install step using: Installing dependencies (npm ci)" in log.messages


def test_unrecovered_install_raises_with_step(make_config, tmp_path):
    installer, _ = _installer(make_config, fail={"install", "legacy", "ci"})
    log = Recorder()

    with pytest.raises(DependencyInstallError) as exc:
        installer.install(tmp_path, {"scripts": {"build": "tsc"}}, log)

    err = exc.value
    assert err.step == "install"
    assert "failed with code 1" in err.message
    assert "npm ERR! install failed" in err.output
    # Audit and build never run once the install is lost
    assert not any(m.startswith("Fixing vulnerabilities") for m in log.messages)
    assert not any(m.startswith("Building project") for m in log.messages)


def test_build_runs_only_when_declared(make_config, tmp_path):
    installer, _ = _installer(make_config)
    assert BUILD_STEP not in installer.build_steps({"scripts": {"start": "node ."}})
    assert installer.build_steps({"scripts": {"build": "tsc"}})[-1] is BUILD_STEP

    log = Recorder()
    results = installer.install(tmp_path, {"scripts": {"build": "tsc"}}, log)
    assert results[-1].step.name == "build"
    assert "Building project (npm run build) completed successfully." in log.messages


def test_build_failure_is_fatal(make_config, tmp_path):
    installer, _ = _installer(make_config, fail={"build"})
    with pytest.raises(DependencyInstallError) as exc:
        installer.install(tmp_path, {"scripts": {"build": "tsc"}}, Recorder())
    assert exc.value.step == "build"


def test_optional_failures_only_warn(make_config, tmp_path):
    installer, _ = _installer(make_config, fail={"cache", "audit"})
    log = Recorder()

    results = installer.install(tmp_path, {}, log)

    assert [r.ok for r in results] == [False, True, False]
    assert "Warning: Cleaning npm cache failed; continuing." in log.messages
    assert (LogStream.STDERR, "Warning: Fixing vulnerabilities failed; continuing.") in log.lines


def test_missing_npm_binary_fails_the_required_step(make_config, tmp_path):
    installer, _ = _installer(make_config, npm_bin=str(tmp_path / "no-such-npm"))
    log = Recorder()

    with pytest.raises(DependencyInstallError) as exc:
        installer.install(tmp_path, {}, log)

    assert exc.value.step == "install"
    assert any("failed to start" in m for m in log.messages)


def test_cancel_kills_the_running_step(make_config, tmp_path):
    installer, _ = _installer(make_config, slow={"install"})
    token = CancelToken(kill_timeout=2.0)
    outcome: dict = {}

    def run():
        try:
            installer.install(tmp_path, {}, Recorder(), token)
        except DeploymentCancelled as e:
            outcome["cancelled"] = e

    t = threading.Thread(target=run)
    t.start()
    time.sleep(1.0)
    started = time.monotonic()
    token.cancel("stop requested")
    t.join(timeout=10)

    assert not t.is_alive()
    assert "cancelled" in outcome
    assert time.monotonic() - started < 10


def test_cancelled_token_short_circuits(make_config, fake_npm, tmp_path):
    installer, _ = _installer(make_config)
    token = CancelToken()
    token.cancel()
    with pytest.raises(DeploymentCancelled):
        installer.install(tmp_path, {}, Recorder(), token)
    assert fake_npm().calls == []
