from __future__ import annotations

import asyncio
import sys

import pytest

from engine.errors import CancelledError, ConfigurationError, ExternalToolFailure, InvalidStateError
from engine.supervisor import (
    OUTCOME_CANCELLED,
    OUTCOME_FAILED,
    OUTCOME_SUCCESS,
    Supervisor,
    classify_exit,
)


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


SLEEPER = "import time; time.sleep(30)"


def test_run_streams_lines_including_carriage_returns() -> None:
    lines = []

    async def scenario():
        supervisor = Supervisor()
        return await supervisor.run(
            "tool",
            _python("import sys; sys.stdout.write('10%\\r20%\\r30%\\nready\\n'); sys.stdout.flush()"),
            on_line=lines.append,
        )

    result = asyncio.run(scenario())

    assert result.outcome == OUTCOME_SUCCESS
    assert result.exit_code == 0
    assert lines == ["10%", "20%", "30%", "ready"]
    assert "ready" in result.output


def test_nonzero_exit_is_failure() -> None:
    async def scenario():
        return await Supervisor().run("tool", _python("import sys; print('bad input'); sys.exit(1)"))

    result = asyncio.run(scenario())

    assert result.outcome == OUTCOME_FAILED
    with pytest.raises(ExternalToolFailure) as excinfo:
        result.raise_for_outcome("yt-dlp")
    assert excinfo.value.exit_code == 1
    assert "bad input" in str(excinfo.value)


def test_exit_143_is_cancellation() -> None:
    async def scenario():
        return await Supervisor().run("tool", _python("import sys; sys.exit(143)"))

    result = asyncio.run(scenario())

    assert result.outcome == OUTCOME_CANCELLED
    with pytest.raises(CancelledError):
        result.raise_for_outcome("yt-dlp")


def test_nonzero_exit_with_expected_output_is_success(tmp_path) -> None:
    target = tmp_path / "1.mp4"
    target.write_bytes(b"done")

    async def scenario():
        return await Supervisor().run(
            "tool",
            _python("import sys; sys.exit(1)"),
            expected_output=str(target),
        )

    assert asyncio.run(scenario()).outcome == OUTCOME_SUCCESS


def test_kill_through_registry() -> None:
    async def scenario():
        supervisor = Supervisor()
        handle = await supervisor.start("download:1", _python(SLEEPER))
        assert supervisor.registry.active_keys() == ["download:1"]
        killed = supervisor.registry.kill("download:1")
        result = await handle.wait()
        return supervisor, handle, killed, result

    supervisor, handle, killed, result = asyncio.run(scenario())

    assert killed is handle
    assert handle.kill_requested is True
    assert result.outcome == OUTCOME_CANCELLED
    assert supervisor.registry.get("download:1") is None


def test_pending_kill_is_delivered_on_register() -> None:
    async def scenario():
        supervisor = Supervisor()
        assert supervisor.registry.kill("download:1", expected=True) is None
        handle = await supervisor.start("download:1", _python(SLEEPER))
        return handle, await asyncio.wait_for(handle.wait(), timeout=10)

    handle, result = asyncio.run(scenario())

    assert handle.kill_requested is True
    assert result.outcome == OUTCOME_CANCELLED


def test_discarded_pending_kill_is_not_delivered() -> None:
    async def scenario():
        supervisor = Supervisor()
        supervisor.registry.kill("download:1", expected=True)
        supervisor.registry.discard_pending_kill("download:1")
        return await supervisor.run("download:1", _python("print('ok')"))

    assert asyncio.run(scenario()).outcome == OUTCOME_SUCCESS


def test_one_live_process_per_key() -> None:
    async def scenario():
        supervisor = Supervisor()
        handle = await supervisor.start("relay", _python(SLEEPER))
        try:
            with pytest.raises(InvalidStateError):
                await supervisor.start("relay", _python(SLEEPER))
        finally:
            handle.kill()
            await handle.wait()

    asyncio.run(scenario())


def test_idle_timeout_fails_the_run() -> None:
    async def scenario():
        return await Supervisor().run("download:1", _python(SLEEPER), idle_timeout=0.3)

    result = asyncio.run(scenario())

    assert result.timed_out is True
    assert result.outcome == OUTCOME_FAILED
    with pytest.raises(ExternalToolFailure, match="stalled"):
        result.raise_for_outcome("yt-dlp")


def test_missing_binary_is_configuration_error(tmp_path) -> None:
    async def scenario():
        await Supervisor().start("tool", [str(tmp_path / "no-such-tool")])

    with pytest.raises(ConfigurationError):
        asyncio.run(scenario())


def test_classify_exit() -> None:
    assert classify_exit(0) == OUTCOME_SUCCESS
    assert classify_exit(-15) == OUTCOME_CANCELLED
    assert classify_exit(1, kill_requested=True) == OUTCOME_CANCELLED
    assert classify_exit(1) == OUTCOME_FAILED
    assert classify_exit(-15, kill_requested=True, timed_out=True) == OUTCOME_FAILED
