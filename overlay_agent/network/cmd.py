"""Shared async command utilities for agent network modules."""

import asyncio
import shutil

DEFAULT_TIMEOUT = 10.0


async def run_cmd(cmd: list[str], timeout: float = DEFAULT_TIMEOUT) -> tuple[int, str, str]:
    """Run a command asynchronously with a hard timeout.

    Args:
        cmd: Command and arguments as list
        timeout: Seconds to wait before killing the process

    Returns:
        Tuple of (return_code, stdout, stderr). A missing binary yields
        rc 127 and a timeout yields rc 124, mirroring the shell.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return 127, "", f"{cmd[0]}: command not found"

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return 124, "", f"{cmd[0]} timed out after {timeout}s"

    return (
        process.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def binary_available(name: str) -> bool:
    return shutil.which(name) is not None
