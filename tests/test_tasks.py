import subprocess
import sys
import threading
import time

import pytest

from botharbor.tasks import CancelToken, DeploymentCancelled, TaskRunner


@pytest.fixture
def runner():
    r = TaskRunner()
    yield r
    r.shutdown(wait=True)


def test_submit_passes_token_and_args(runner):
    task = runner.submit("sum", lambda token, a, b: (token.cancelled, a + b), 2, 3)
    assert task.join(timeout=5)
    assert task.future.result() == (False, 5)
    assert task.done()


def test_cancel_interrupts_sleep(runner):
    def work(token):
        if token.sleep(30):
            token.raise_if_cancelled()
        return "finished"

    task = runner.submit("sleepy", work)
    time.sleep(0.1)
    task.cancel("stop")
    assert task.join(timeout=5)
    # Cancellation is swallowed by the runner
    assert task.future.result() is None
    assert task.token.reason == "stop"


def test_cancel_kills_attached_process():
    token = CancelToken(kill_timeout=2.0)
    proc = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(30)"], start_new_session=True
    )
    token.attach(proc)
    token.cancel()
    assert proc.wait(timeout=5) is not None
    with pytest.raises(DeploymentCancelled):
        token.raise_if_cancelled()


def test_attach_after_cancel_kills_immediately():
    token = CancelToken(kill_timeout=2.0)
    token.cancel()
    proc = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(30)"], start_new_session=True
    )
    token.attach(proc)
    assert proc.wait(timeout=5) is not None


def test_join_times_out_and_failures_are_recorded(runner):
    slow = runner.submit("slow", lambda token: token.sleep(1))
    assert slow.join(timeout=0.01) is False
    assert slow.join(timeout=5) is True

    def boom(token):
        raise RuntimeError("boom")

    failed = runner.submit("boom", boom)
    assert failed.join(timeout=5) is True
    assert isinstance(failed.future.exception(), RuntimeError)


def test_submit_after_shutdown_raises():
    r = TaskRunner()
    r.shutdown()
    with pytest.raises(RuntimeError):
        r.submit("late", lambda token: None)


def test_tasks_do_not_wait_for_each_other(runner):
    # More tasks than any sensible pool size, all parked until released
    release = threading.Event()
    started = threading.Semaphore(0)

    def park(token):
        started.release()
        release.wait(10)
        return "done"

    tasks = [runner.submit(f"park-{i}", park) for i in range(24)]
    try:
        for _ in tasks:
            assert started.acquire(timeout=5)
        assert runner.active == 24
    finally:
        release.set()
    assert all(t.join(timeout=5) for t in tasks)
    assert [t.future.result() for t in tasks] == ["done"] * 24


def test_shutdown_waits_for_running_tasks():
    r = TaskRunner()
    finished = threading.Event()

    def work(token):
        token.sleep(0.2)
        finished.set()

    r.submit("work", work)
    r.shutdown(wait=True)
    assert finished.is_set()
    assert r.active == 0
