"""Platform shell launchers for the execution agent."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import List, Optional

from interfaces import ShellLauncher


class _SubprocessLauncher:
    def argv(self, command: str) -> List[str]:
        raise NotImplementedError

    async def spawn(
        self,
        command: str,
        cwd: Optional[str] = None,
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *self.argv(command),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )

    def kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()


class PowerShellLauncher(_SubprocessLauncher):
    def __init__(self, executable: str = "powershell.exe") -> None:
        self.executable = executable

    def argv(self, command: str) -> List[str]:
        return [
            self.executable,
            "-NoLogo",
            "-NoProfile",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            command,
        ]


class PosixShellLauncher(_SubprocessLauncher):
    """``sh -lc`` in its own session so a kill reaches the whole pipeline."""

    def __init__(self, executable: str = "sh") -> None:
        self.executable = executable

    def argv(self, command: str) -> List[str]:
        return [self.executable, "-lc", command]

    async def spawn(
        self,
        command: str,
        cwd: Optional[str] = None,
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *self.argv(command),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            start_new_session=True,
        )

    def kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass


def select_launcher(platform: str = sys.platform) -> ShellLauncher:
    if platform.startswith("win"):
        return PowerShellLauncher()
    return PosixShellLauncher()
