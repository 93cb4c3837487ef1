"""Resolve a logical runtime name to an executable path on a given host.

Resolution order for ``ToolResolver(kind="jdk", name="jdk17")`` on host ``h``:

1. ``<toolchains_dir>/h-toolchains.xml`` (Maven toolchains format). The first
   ``<toolchain>`` whose ``<type>`` is the kind and whose ``<provides>`` holds
   the name gives ``<configuration><jdkHome>``; the executable is looked up in
   the *nix, macOS bundle and Windows layouts under that home.
2. The host's tools tree: ``jenkins_home/tools/<dir>/<name>`` then
   ``tools/<dir>/<name>``, walked two levels deep for ``bin/<exe>``.

The descriptor is read on the driver; executability is checked on the host.
"""

from __future__ import annotations

import logging
import os
import shlex
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

from common.errors import ToolResolutionError
from driver.deployment.ssh_client import SSHClient

logger = logging.getLogger(__name__)

# Directory names tools of a kind are installed under
TOOL_DIRECTORIES = {
    "jdk": ("hudson.model.JDK", "JDK"),
}

DEFAULT_EXECUTABLES = {
    "jdk": "java",
    "python": "python3",
}

SCAN_DEPTH = 2


class HostFileSystem(ABC):
    """The few filesystem queries tool resolution needs on a host."""
    
    @abstractmethod
    async def is_dir(self, path: str) -> bool:
        ...
    
    @abstractmethod
    async def is_executable(self, path: str) -> bool:
        ...
    
    @abstractmethod
    async def walk_dirs(self, root: str, depth: int) -> list[str]:
        """Directories under root (root included) down to depth, shallowest first."""
    
    @abstractmethod
    async def absolute(self, path: str) -> str:
        ...


class LocalHostFileSystem(HostFileSystem):
    """Filesystem of the driver's own host; relative paths resolve against root."""
    
    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root else Path.cwd()
    
    def _path(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.root / p
    
    async def is_dir(self, path: str) -> bool:
        return self._path(path).is_dir()
    
    async def is_executable(self, path: str) -> bool:
        p = self._path(path)
        return p.is_file() and os.access(p, os.X_OK)
    
    async def walk_dirs(self, root: str, depth: int) -> list[str]:
        base = self._path(root)
        found = [base]
        level = [base]
        for _ in range(depth):
            next_level = []
            for directory in level:
                try:
                    children = sorted(c for c in directory.iterdir() if c.is_dir())
                except OSError:
                    continue
                next_level.extend(children)
            found.extend(next_level)
            level = next_level
        return [str(p) for p in found]
    
    async def absolute(self, path: str) -> str:
        return str(self._path(path).absolute())


class SshHostFileSystem(HostFileSystem):
    """Filesystem of a remote host, queried over ssh; relative paths are under the login home."""
    
    def __init__(self, ssh: SSHClient, timeout: float = 30):
        self.ssh = ssh
        self.timeout = timeout
    
    async def _test(self, flag: str, path: str) -> bool:
        result = await self.ssh.run_command(
            f"test {flag} {shlex.quote(path)}", timeout=self.timeout, check=False
        )
        return result.success
    
    async def is_dir(self, path: str) -> bool:
        return await self._test("-d", path)
    
    async def is_executable(self, path: str) -> bool:
        return await self._test("-f", path) and await self._test("-x", path)
    
    async def walk_dirs(self, root: str, depth: int) -> list[str]:
        result = await self.ssh.run_command(
            f"find {shlex.quote(root)} -maxdepth {depth} -type d",
            timeout=self.timeout,
            check=False,
        )
        if not result.success:
            return []
        dirs = [line for line in result.stdout.splitlines() if line]
        return sorted(dirs, key=lambda d: (len(PurePosixPath(d).parts), d))
    
    async def absolute(self, path: str) -> str:
        if path.startswith("/"):
            return path
        result = await self.ssh.run_command(
            f"readlink -f {shlex.quote(path)}", timeout=self.timeout, check=False
        )
        return result.stdout.strip() if result.success and result.stdout.strip() else path


def _local(tag: str) -> str:
    """Strip an XML namespace from a tag."""
    return tag.rsplit("}", 1)[-1]


def _child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


def home_from_toolchains(xml_text: str, kind: str, name: str) -> Optional[str]:
    """Home directory of the first toolchain of this kind providing name."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.debug(f"Ignoring unreadable toolchains descriptor: {e}")
        return None
    
    for toolchain in root:
        if _local(toolchain.tag) != "toolchain":
            continue
        type_el = _child(toolchain, "type")
        if type_el is None or (type_el.text or "").strip() != kind:
            continue
        provides = _child(toolchain, "provides")
        if provides is None:
            continue
        if not any((p.text or "").strip() == name for p in provides):
            continue
        configuration = _child(toolchain, "configuration")
        if configuration is None:
            continue
        home = _child(configuration, f"{kind}Home")
        if home is not None and (home.text or "").strip():
            return home.text.strip()
    return None


class ToolResolver:
    """Find the executable of a named tool on a host."""
    
    def __init__(
        self,
        kind: str,
        name: str,
        executable: Optional[str] = None,
        toolchains_dir: Optional[Path] = None,
    ):
        self.kind = kind
        self.name = name
        self.executable = executable or DEFAULT_EXECUTABLES.get(kind, kind)
        self.toolchains_dir = Path(toolchains_dir) if toolchains_dir else Path.cwd()
    
    def descriptor_path(self, hostname: str) -> Path:
        return self.toolchains_dir / f"{hostname}-toolchains.xml"
    
    def candidates(self, home: str) -> list[str]:
        """Executable locations under a tool home: *nix, macOS bundle, Windows."""
        base = PurePosixPath(home)
        return [
            str(base / "bin" / self.executable),
            str(base / "Contents" / "Home" / "bin" / self.executable),
            str(base / "bin" / f"{self.executable}.exe"),
        ]
    
    def search_roots(self) -> list[str]:
        dirs = TOOL_DIRECTORIES.get(self.kind, (self.kind,))
        roots = []
        for prefix in ("jenkins_home/tools", "tools"):
            for directory in dirs:
                roots.append(f"{prefix}/{directory}/{self.name}")
        return roots
    
    async def resolve(self, hostname: str, fs: HostFileSystem) -> str:
        """Absolute path of the executable on hostname, or ToolResolutionError."""
        executable = await self._from_descriptor(hostname, fs)
        if executable:
            return executable
        return await self._from_tools_tree(hostname, fs)
    
    async def _from_descriptor(self, hostname: str, fs: HostFileSystem) -> Optional[str]:
        path = self.descriptor_path(hostname)
        if not path.exists():
            logger.debug(f"No toolchains descriptor {path}")
            return None
        
        home = home_from_toolchains(path.read_text(), self.kind, self.name)
        if not home:
            logger.debug(f"Descriptor {path} has no {self.kind} providing '{self.name}'")
            return None
        
        logger.debug(f"Host '{hostname}' has {self.kind}Home '{home}' from toolchains")
        for candidate in self.candidates(home):
            if await fs.is_executable(candidate):
                logger.info(f"Host '{hostname}' will use {self.kind} executable {candidate}")
                return candidate
        logger.warning(f"No {self.executable} executable under {home} on '{hostname}', scanning tools")
        return None
    
    async def _from_tools_tree(self, hostname: str, fs: HostFileSystem) -> str:
        searched = []
        for root in self.search_roots():
            if not await fs.is_dir(root):
                searched.append(root)
                continue
            for directory in await fs.walk_dirs(root, SCAN_DEPTH):
                for candidate in (
                    f"{directory}/bin/{self.executable}",
                    f"{directory}/bin/{self.executable}.exe",
                ):
                    if await fs.is_executable(candidate):
                        resolved = await fs.absolute(candidate)
                        logger.info(f"Found {self.kind} '{self.name}' on '{hostname}' at {resolved}")
                        return resolved
            searched.append(root)
        
        raise ToolResolutionError(
            self.name, hostname, detail=f"no executable {self.executable} in {', '.join(searched)}"
        )
