"""Remote access to cluster hosts."""

from driver.deployment.ssh_client import SSHClient, SSHCommandError, SSHCommandResult

__all__ = ["SSHClient", "SSHCommandError", "SSHCommandResult"]
