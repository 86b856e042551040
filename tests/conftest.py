from __future__ import annotations

import io
import stat
import sys
import time
import zipfile
from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_SRC = (_PROJECT_ROOT / "src").resolve()
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

load_dotenv(_PROJECT_ROOT / ".env", override=False)

from botharbor.config import SupervisorConfig  # noqa: E402
from botharbor.service import BotDeployService  # noqa: E402


# Stand-in for npm: classifies its arguments, records the call, and fails or
# stalls for the steps named in FAIL / SLOW.
_FAKE_NPM = """#!{python}
import sys
import time

args = sys.argv[1:]
if args[:1] == ["cache"]:
    key = "cache"
elif args[:1] == ["install"] and "--legacy-peer-deps" in args:
    key = "legacy"
elif args[:1] == ["install"]:
    key = "install"
elif args[:1] == ["ci"]:
    key = "ci"
elif args[:1] == ["audit"]:
    key = "audit"
elif args[:2] == ["run", "build"]:
    key = "build"
elif args[:1] == ["start"]:
    key = "start"
else:
    key = "other"

with open({calls!r}, "a") as f:
    f.write(key + "\\n")

FAIL = {fail!r}
SLOW = {slow!r}
if key in SLOW:
    time.sleep(30)
if key in FAIL:
    sys.stderr.write("npm ERR! " + key + " failed\\n")
    sys.exit(1)
print("npm " + " ".join(args) + " ok")
"""


class FakeNpm:
    def __init__(self, path: Path, calls: Path):
        self.path = path
        self.calls_file = calls

    @property
    def calls(self) -> list[str]:
        if not self.calls_file.exists():
            return []
        return [c for c in self.calls_file.read_text().splitlines() if c]


@pytest.fixture
def fake_npm(tmp_path: Path) -> Callable[..., FakeNpm]:
    def _make(fail: Iterable[str] = (), slow: Iterable[str] = ()) -> FakeNpm:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        script = bin_dir / "npm"
        calls = tmp_path / "npm-calls.txt"
        script.write_text(
            _FAKE_NPM.format(python=sys.executable, calls=str(calls), fail=set(fail), slow=set(slow))
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeNpm(script, calls)

    return _make


@pytest.fixture
def make_config(tmp_path: Path, fake_npm) -> Callable[..., SupervisorConfig]:
    """Fast timeouts; "node" is the Python interpreter so entry files hold Python code."""

    def _make(fail: Iterable[str] = (), slow: Iterable[str] = (), **overrides) -> SupervisorConfig:
        npm = fake_npm(fail=fail, slow=slow)
        values = dict(
            sandbox_root=str(tmp_path / "sandboxes"),
            state_dir=str(tmp_path / "state"),
            port_start=21000,
            start_grace_s=0.5,
            candidate_delay_s=0.05,
            stop_timeout_s=3.0,
            restart_settle_s=0.05,
            restart_delay_s=0.1,
            restart_backoff=1.0,
            install_step_timeout_s=30.0,
            heartbeat_s=60.0,
            node_bin=sys.executable,
            npm_bin=str(npm.path),
        )
        values.update(overrides)
        return SupervisorConfig(**values)

    return _make


@pytest.fixture
def make_service(make_config) -> Callable[..., BotDeployService]:
    created: list[BotDeployService] = []

    def _make(config: Optional[SupervisorConfig] = None, **kwargs) -> BotDeployService:
        svc = BotDeployService(config or make_config(**kwargs))
        created.append(svc)
        return svc

    yield _make

    for svc in created:
        svc.shutdown()


@pytest.fixture
def make_zip() -> Callable[[dict], bytes]:
    def _make(files: dict) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            for name, content in files.items():
                zf.writestr(name, content)
        return buf.getvalue()

    return _make


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    def _wait(predicate: Callable[[], bool], timeout: float = 15.0, interval: float = 0.05) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


# Worker "entry files" executed by the Python interpreter standing in for node
LONG_RUNNING = "import time\nprint('bot online', flush=True)\ntime.sleep(60)\n"


@pytest.fixture
def long_running_bot() -> str:
    return LONG_RUNNING

