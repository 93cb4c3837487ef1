"""Tests for runtime tool resolution."""

import os
import stat
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from common.errors import ToolResolutionError
from driver.deployment.ssh_client import SSHCommandResult
from driver.toolchain import (
    LocalHostFileSystem,
    SshHostFileSystem,
    ToolResolver,
    home_from_toolchains,
)

TOOLCHAINS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<toolchains xmlns="http://maven.apache.org/TOOLCHAINS/1.1.0">
  <toolchain>
    <type>jdk</type>
    <provides><version>jdk11</version></provides>
    <configuration><jdkHome>{jdk11}</jdkHome></configuration>
  </toolchain>
  <toolchain>
    <type>jdk</type>
    <provides><version>jdk17</version><vendor>temurin</vendor></provides>
    <configuration><jdkHome>{jdk17}</jdkHome></configuration>
  </toolchain>
</toolchains>
"""


def make_executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class TestToolchainsDescriptor:
    """Tests for parsing the toolchains file."""
    
    def test_finds_home_by_version(self):
        xml = TOOLCHAINS_XML.format(jdk11="/opt/jdk11", jdk17="/opt/jdk17")
        
        assert home_from_toolchains(xml, "jdk", "jdk17") == "/opt/jdk17"
        assert home_from_toolchains(xml, "jdk", "jdk11") == "/opt/jdk11"
    
    def test_no_match(self):
        xml = TOOLCHAINS_XML.format(jdk11="/opt/jdk11", jdk17="/opt/jdk17")
        
        assert home_from_toolchains(xml, "jdk", "jdk21") is None
        assert home_from_toolchains(xml, "python", "jdk17") is None
    
    def test_unparseable(self):
        assert home_from_toolchains("<toolchains", "jdk", "jdk17") is None


@pytest.mark.asyncio
class TestToolResolver:
    """Tests for resolving a tool on a host."""
    
    async def test_descriptor_wins_without_scanning(self, temp_dir):
        jdk17 = temp_dir / "opt" / "jdk17"
        java = make_executable(jdk17 / "bin" / "java")
        (temp_dir / "load-1-toolchains.xml").write_text(
            TOOLCHAINS_XML.format(jdk11=temp_dir / "missing", jdk17=jdk17)
        )
        fs = LocalHostFileSystem(temp_dir)
        fs.walk_dirs = AsyncMock(side_effect=AssertionError("tools tree scanned"))
        
        resolver = ToolResolver("jdk", "jdk17", toolchains_dir=temp_dir)
        
        assert await resolver.resolve("load-1", fs) == str(java)
    
    async def test_descriptor_macos_layout(self, temp_dir):
        jdk17 = temp_dir / "jdk17"
        java = make_executable(jdk17 / "Contents" / "Home" / "bin" / "java")
        (temp_dir / "mac-toolchains.xml").write_text(
            TOOLCHAINS_XML.format(jdk11="/nowhere", jdk17=jdk17)
        )
        
        resolver = ToolResolver("jdk", "jdk17", toolchains_dir=temp_dir)
        
        assert await resolver.resolve("mac", LocalHostFileSystem(temp_dir)) == str(java)
    
    async def test_fallback_tools_tree(self, temp_dir):
        java = make_executable(temp_dir / "tools" / "JDK" / "jdk17" / "jdk-17" / "bin" / "java")
        
        resolver = ToolResolver("jdk", "jdk17", toolchains_dir=temp_dir)
        resolved = await resolver.resolve("load-2", LocalHostFileSystem(temp_dir))
        
        assert Path(resolved) == java.absolute()
    
    async def test_jenkins_home_is_searched_first(self, temp_dir):
        preferred = make_executable(
            temp_dir / "jenkins_home" / "tools" / "hudson.model.JDK" / "jdk17" / "bin" / "java"
        )
        make_executable(temp_dir / "tools" / "hudson.model.JDK" / "jdk17" / "bin" / "java")
        
        resolver = ToolResolver("jdk", "jdk17", toolchains_dir=temp_dir)
        
        assert Path(await resolver.resolve("h", LocalHostFileSystem(temp_dir))) == preferred.absolute()
    
    async def test_descriptor_home_without_executable_falls_back(self, temp_dir):
        (temp_dir / "h-toolchains.xml").write_text(
            TOOLCHAINS_XML.format(jdk11="/nowhere", jdk17=temp_dir / "empty")
        )
        java = make_executable(temp_dir / "tools" / "JDK" / "jdk17" / "bin" / "java")
        
        resolver = ToolResolver("jdk", "jdk17", toolchains_dir=temp_dir)
        
        assert Path(await resolver.resolve("h", LocalHostFileSystem(temp_dir))) == java.absolute()
    
    async def test_too_deep_is_not_found(self, temp_dir):
        make_executable(temp_dir / "tools" / "JDK" / "jdk17" / "a" / "b" / "c" / "bin" / "java")
        
        resolver = ToolResolver("jdk", "jdk17", toolchains_dir=temp_dir)
        
        with pytest.raises(ToolResolutionError):
            await resolver.resolve("h", LocalHostFileSystem(temp_dir))
    
    async def test_non_executable_is_ignored(self, temp_dir):
        java = temp_dir / "tools" / "JDK" / "jdk17" / "bin" / "java"
        java.parent.mkdir(parents=True)
        java.write_text("")
        os.chmod(java, 0o644)
        
        resolver = ToolResolver("jdk", "jdk17", toolchains_dir=temp_dir)
        
        with pytest.raises(ToolResolutionError, match="jdk17"):
            await resolver.resolve("h", LocalHostFileSystem(temp_dir))
    
    async def test_python_kind(self, temp_dir):
        python = make_executable(temp_dir / "tools" / "python" / "py312" / "bin" / "python3")
        
        resolver = ToolResolver("python", "py312", toolchains_dir=temp_dir)
        
        assert Path(await resolver.resolve("h", LocalHostFileSystem(temp_dir))) == python.absolute()


@pytest.mark.asyncio
class TestSshHostFileSystem:
    """Tests for remote filesystem queries."""
    
    async def test_queries_go_over_ssh(self):
        ssh = AsyncMock()
        ssh.run_command = AsyncMock(return_value=SSHCommandResult(0, "", ""))
        fs = SshHostFileSystem(ssh)
        
        assert await fs.is_dir("tools/JDK/jdk17")
        assert ssh.run_command.call_args[0][0] == "test -d tools/JDK/jdk17"
    
    async def test_walk_orders_shallowest_first(self):
        ssh = AsyncMock()
        ssh.run_command = AsyncMock(
            return_value=SSHCommandResult(0, "tools/x/jdk-17/sub\ntools/x\ntools/x/jdk-17\n", "")
        )
        fs = SshHostFileSystem(ssh)
        
        assert await fs.walk_dirs("tools/x", 2) == ["tools/x", "tools/x/jdk-17", "tools/x/jdk-17/sub"]
    
    async def test_failed_test_means_false(self):
        ssh = AsyncMock()
        ssh.run_command = AsyncMock(return_value=SSHCommandResult(1, "", ""))
        
        assert not await SshHostFileSystem(ssh).is_executable("/opt/jdk17/bin/java")
