"""ssh/scp subprocess wrapper used to start nodes and fetch their reports."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Non-interactive: unknown host keys accepted, no password prompts
_BASE_OPTIONS = {
    "StrictHostKeyChecking": "no",
    "UserKnownHostsFile": "/dev/null",
    "LogLevel": "ERROR",
    "BatchMode": "yes",
}


@dataclass
class SSHCommandResult:
    exit_code: int
    stdout: str
    stderr: str
    
    @property
    def success(self) -> bool:
        return self.exit_code == 0
    
    @property
    def last_line(self) -> str:
        lines = self.stdout.strip().splitlines()
        return lines[-1] if lines else ""


class SSHCommandError(RuntimeError):
    """A remote command or copy exited non-zero."""
    
    def __init__(self, hostname: str, what: str, result: SSHCommandResult):
        self.hostname = hostname
        self.result = result
        detail = (result.stderr or result.stdout).strip()
        super().__init__(f"{what} on {hostname} failed ({result.exit_code}): {detail}")


class SSHClient:
    """One remote host, reached through the local ssh and scp binaries."""
    
    def __init__(
        self,
        hostname: str,
        username: str = "root",
        private_key_path: Optional[str] = None,
        port: int = 22,
        connect_timeout: int = 10,
    ):
        self.hostname = hostname
        self.username = username
        self.private_key_path = private_key_path
        self.port = port
        self.connect_timeout = connect_timeout
    
    @property
    def target(self) -> str:
        return f"{self.username}@{self.hostname}"
    
    def options(self, port_flag: str) -> list[str]:
        """Common ssh/scp options; scp spells the port flag -P."""
        settings = dict(_BASE_OPTIONS, ConnectTimeout=str(self.connect_timeout))
        argv = [arg for key, value in settings.items() for arg in ("-o", f"{key}={value}")]
        argv += [port_flag, str(self.port)]
        if self.private_key_path and os.path.exists(self.private_key_path):
            argv += ["-i", self.private_key_path]
        return argv
    
    def ssh_argv(self, command: str) -> list[str]:
        return ["ssh", *self.options("-p"), self.target, command]
    
    def scp_argv(self, remote_path: str, local_path: str) -> list[str]:
        return ["scp", "-r", "-q", *self.options("-P"), f"{self.target}:{remote_path}", local_path]
    
    async def _exec(self, argv: list[str], timeout: float) -> SSHCommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return SSHCommandResult(-1, "", f"{argv[0]} is not installed")
        
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return SSHCommandResult(-1, "", f"timed out after {timeout}s")
        return SSHCommandResult(proc.returncode or 0, out.decode(errors="replace"), err.decode(errors="replace"))
    
    async def run_command(self, command: str, timeout: float = 60, check: bool = True) -> SSHCommandResult:
        """Run a shell command remotely; with check=True a non-zero exit raises SSHCommandError."""
        logger.debug(f"[{self.hostname}] $ {command}")
        result = await self._exec(self.ssh_argv(command), timeout)
        if check and not result.success:
            raise SSHCommandError(self.hostname, repr(command), result)
        return result
    
    async def connect(self) -> None:
        """Fail fast when the host cannot be reached."""
        result = await self.run_command("true", timeout=self.connect_timeout, check=False)
        if not result.success:
            raise ConnectionError(f"Cannot reach {self.target}: {result.stderr.strip()}")
    
    async def start_detached(self, argv: list[str], log_path: str) -> int:
        """Start a process that outlives the ssh session, logging to log_path; returns its pid."""
        log = shlex.quote(log_path)
        script = (
            f"mkdir -p {shlex.quote(str(Path(log_path).parent))} && "
            f"nohup {shlex.join(argv)} > {log} 2>&1 < /dev/null & echo $!"
        )
        result = await self.run_command(script, timeout=30)
        if not result.last_line.isdigit():
            raise SSHCommandError(self.hostname, "reading the started pid", result)
        pid = int(result.last_line)
        logger.info(f"Started pid {pid} on {self.hostname}, log at {log_path}")
        return pid
    
    async def kill(self, pid: int) -> SSHCommandResult:
        return await self.run_command(f"kill {pid}", timeout=15, check=False)
    
    async def download(self, remote_dir: str, local_dir: Path, timeout: float = 300) -> None:
        """Copy the contents of remote_dir into local_dir."""
        local_dir.mkdir(parents=True, exist_ok=True)
        source = remote_dir.rstrip("/") + "/."
        result = await self._exec(self.scp_argv(source, str(local_dir)), timeout)
        if not result.success:
            raise SSHCommandError(self.hostname, f"download of {remote_dir}", result)
