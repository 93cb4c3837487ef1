"""Start, stop and collect from node worker processes."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from common.errors import NodeLaunchError, ToolResolutionError
from common.models.cluster import NodeConfig, RuntimeConfig
from driver.deployment.ssh_client import SSHClient
from driver.toolchain import HostFileSystem, LocalHostFileSystem, SshHostFileSystem, ToolResolver

logger = logging.getLogger(__name__)

# Root of the checkout, put on PYTHONPATH of local node processes
PROJECT_ROOT = Path(__file__).resolve().parent.parent


@dataclass
class LaunchedNode:
    """A node process started by a launcher."""
    array_id: str
    node_id: str
    hostname: str
    executable: str
    work_dir: str
    handle: Any = field(default=None, repr=False)
    
    @property
    def name(self) -> str:
        return f"{self.array_id}/{self.node_id}"


class NodeLauncher(ABC):
    """Starts one node worker per configured node."""
    
    def __init__(
        self,
        redis_url: str,
        node_work_dir: Path | str = "/tmp/perfharness",
        toolchains_dir: Optional[Path] = None,
        log_level: str = "INFO",
    ):
        self.redis_url = redis_url
        self.node_work_dir = str(node_work_dir)
        self.toolchains_dir = toolchains_dir
        self.log_level = log_level
    
    def node_dir(self, cluster_id: str, array_id: str, node_id: str) -> str:
        """Where the node writes its reports; mirrors NodeSettings.node_dir."""
        return str(PurePosixPath(self.node_work_dir) / cluster_id / array_id / node_id)
    
    def node_command(
        self,
        executable: str,
        runtime: RuntimeConfig,
        cluster_id: str,
        array_id: str,
        node_id: str,
    ) -> list[str]:
        return [
            executable,
            *runtime.args,
            "-m", "node.main",
            "--cluster-id", cluster_id,
            "--array", array_id,
            "--node", node_id,
            "--redis-url", self.redis_url,
            "--work-dir", self.node_work_dir,
            "--log-level", self.log_level,
        ]
    
    def default_executable(self, runtime: RuntimeConfig) -> str:
        return runtime.executable
    
    async def resolve_executable(self, hostname: str, runtime: RuntimeConfig) -> str:
        """Runtime executable on hostname; ToolResolutionError if the tool is missing."""
        if not runtime.tool_name:
            return self.default_executable(runtime)
        resolver = ToolResolver(
            runtime.tool_kind,
            runtime.tool_name,
            executable=runtime.executable,
            toolchains_dir=self.toolchains_dir,
        )
        return await resolver.resolve(hostname, self.filesystem(hostname))
    
    async def launch(
        self,
        cluster_id: str,
        array_id: str,
        node: NodeConfig,
        runtime: RuntimeConfig,
    ) -> LaunchedNode:
        executable = await self.resolve_executable(node.hostname, runtime)
        launched = LaunchedNode(
            array_id=array_id,
            node_id=node.id,
            hostname=node.hostname,
            executable=executable,
            work_dir=self.node_dir(cluster_id, array_id, node.id),
        )
        argv = self.node_command(executable, runtime, cluster_id, array_id, node.id)
        try:
            launched.handle = await self._start(launched, argv)
        except ToolResolutionError:
            raise
        except Exception as e:
            raise NodeLaunchError(f"Could not start node {launched.name} on {node.hostname}: {e}") from e
        logger.info(f"Launched node {launched.name} on {node.hostname} ({executable})")
        return launched
    
    @abstractmethod
    def filesystem(self, hostname: str) -> HostFileSystem:
        ...
    
    @abstractmethod
    async def _start(self, node: LaunchedNode, argv: list[str]) -> Any:
        """Start the process; returns the handle terminate() needs."""
    
    @abstractmethod
    async def download(self, node: LaunchedNode, local_dir: Path) -> Path:
        """Copy the node's report directory into local_dir."""
    
    @abstractmethod
    async def terminate(self, node: LaunchedNode) -> None:
        ...


class LocalNodeLauncher(NodeLauncher):
    """Runs every node as a subprocess of the driver, whatever its hostname."""
    
    def filesystem(self, hostname: str) -> HostFileSystem:
        return LocalHostFileSystem()
    
    def default_executable(self, runtime: RuntimeConfig) -> str:
        if runtime.tool_kind == "python":
            return sys.executable
        return runtime.executable
    
    async def _start(self, node: LaunchedNode, argv: list[str]) -> asyncio.subprocess.Process:
        log_path = Path(node.work_dir).parent / f"{node.node_id}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(
            p for p in (str(PROJECT_ROOT), env.get("PYTHONPATH", "")) if p
        )
        with open(log_path, "ab") as log_file:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                env=env,
            )
    
    async def download(self, node: LaunchedNode, local_dir: Path) -> Path:
        source = Path(node.work_dir)
        local_dir.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            await asyncio.to_thread(shutil.copytree, source, local_dir, dirs_exist_ok=True)
        else:
            logger.warning(f"Node {node.name} has no report directory {source}")
        return local_dir
    
    async def terminate(self, node: LaunchedNode, timeout: float = 10) -> None:
        proc: Optional[asyncio.subprocess.Process] = node.handle
        if proc is None or proc.returncode is not None:
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Node {node.name} did not exit, killing it")
            proc.kill()
            await proc.wait()


class SshNodeLauncher(NodeLauncher):
    """Starts nodes on their hosts over ssh; the project must be installed there."""
    
    def __init__(
        self,
        redis_url: str,
        node_work_dir: Path | str = "/tmp/perfharness",
        toolchains_dir: Optional[Path] = None,
        log_level: str = "INFO",
        username: str = "root",
        private_key_path: Optional[str] = None,
        connect_timeout: int = 10,
    ):
        super().__init__(redis_url, node_work_dir, toolchains_dir, log_level)
        self.username = username
        self.private_key_path = private_key_path
        self.connect_timeout = connect_timeout
        self._clients: dict[str, SSHClient] = {}
    
    def client(self, hostname: str) -> SSHClient:
        if hostname not in self._clients:
            self._clients[hostname] = SSHClient(
                hostname,
                username=self.username,
                private_key_path=self.private_key_path,
                connect_timeout=self.connect_timeout,
            )
        return self._clients[hostname]
    
    def filesystem(self, hostname: str) -> HostFileSystem:
        return SshHostFileSystem(self.client(hostname))
    
    async def _start(self, node: LaunchedNode, argv: list[str]) -> int:
        ssh = self.client(node.hostname)
        await ssh.connect()
        log_path = str(PurePosixPath(node.work_dir).parent / f"{node.node_id}.log")
        return await ssh.start_detached(argv, log_path)
    
    async def download(self, node: LaunchedNode, local_dir: Path) -> Path:
        await self.client(node.hostname).download(node.work_dir, local_dir)
        return local_dir
    
    async def terminate(self, node: LaunchedNode) -> None:
        if node.handle is None:
            return
        result = await self.client(node.hostname).kill(node.handle)
        if not result.success:
            logger.debug(f"kill {node.handle} on {node.hostname}: {result.stderr.strip()}")


def create_launcher(settings) -> NodeLauncher:
    """Launcher selected by DriverSettings.launcher."""
    common = dict(
        redis_url=settings.redis_url,
        node_work_dir=settings.node_work_dir,
        toolchains_dir=settings.toolchains_dir,
        log_level=settings.log_level,
    )
    if settings.launcher == "ssh":
        return SshNodeLauncher(
            **common,
            username=settings.ssh_user,
            private_key_path=str(settings.ssh_key_path) if settings.ssh_key_path else None,
            connect_timeout=settings.ssh_timeout,
        )
    return LocalNodeLauncher(**common)
