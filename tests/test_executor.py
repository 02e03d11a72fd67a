"""Tests for CommandExecutor."""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from nano_dr.errors import ToolExecutionError
from nano_dr.executor import CommandExecutor


def make_process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock()
    return process


@pytest.mark.asyncio
async def test_run_success():
    process = make_process(stdout=b"ok\n")
    with patch("nano_dr.executor.asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
        result = await CommandExecutor().run("pg_dump", ["--host=db", "--port=5432"], env={"PGPASSWORD": "pw"})

    assert result.returncode == 0
    assert result.stdout == b"ok\n"
    args, kwargs = spawn.call_args
    assert args == ("pg_dump", "--host=db", "--port=5432")
    assert kwargs["env"]["PGPASSWORD"] == "pw"


@pytest.mark.asyncio
async def test_non_zero_exit_raises_with_redacted_details():
    process = make_process(returncode=2, stderr=b"auth failed for password s3cret")
    with patch("nano_dr.executor.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
        with pytest.raises(ToolExecutionError) as exc_info:
            await CommandExecutor().run(
                "mongodump", ["--uri=mongodb://admin:s3cret@db", "--password=s3cret"],
            )

    error = exc_info.value
    assert error.tool == "mongodump"
    assert error.returncode == 2
    assert "s3cret" not in str(error)
    assert "s3cret" not in " ".join(error.tool_args)
    assert "auth failed" in error.stderr


@pytest.mark.asyncio
async def test_env_values_are_treated_as_secrets():
    process = make_process(returncode=1, stderr=b"bad password pw-from-env")
    with patch("nano_dr.executor.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
        with pytest.raises(ToolExecutionError) as exc_info:
            await CommandExecutor().run("pg_dump", [], env={"PGPASSWORD": "pw-from-env"})

    assert "pw-from-env" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_missing_tool():
    with patch(
        "nano_dr.executor.asyncio.create_subprocess_exec",
        AsyncMock(side_effect=FileNotFoundError("pg_dump")),
    ):
        with pytest.raises(ToolExecutionError, match="not found"):
            await CommandExecutor().run("pg_dump", [])


@pytest.mark.asyncio
async def test_timeout_kills_process():
    process = make_process()

    async def hang():
        await asyncio.sleep(10)

    process.communicate = hang
    with patch("nano_dr.executor.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
        with pytest.raises(ToolExecutionError, match="timed out"):
            await CommandExecutor(timeout=0.01).run("mongodump", [])

    process.kill.assert_called_once()
    process.wait.assert_awaited_once()
