# vpnfleet/services/executor.py
"""
Shell command execution against a VPN host.

Two transports behind one contract:
1. Local - subprocess of this process
2. SSH - one authenticated asyncssh session per command

Both return stdout on success and raise a BackendError subclass otherwise.
There is no retry: a single attempt per call, errors go to the caller.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import asyncssh

from vpnfleet.models.vpn import AccessMethod, PasswordAuth, PrivateKeyAuth, SSHConfig, VpnServer
from vpnfleet.services.vpn_backend import (
    BackendAuthenticationError,
    BackendConnectivityError,
    CommandExecutionError,
    SSHAuthenticationNotProvided,
)
from vpnfleet.settings import settings

logger = logging.getLogger(__name__)

# stderr lines like "Warning: AllowedIP has nonzero host part" are not failures
WARNING_PATTERN = re.compile(r"warning", re.IGNORECASE)


class AbstractCommandExecutor(ABC):
    """Runs one shell command and returns its standard output."""

    @abstractmethod
    async def execute(self, command: str, stdin: Optional[str] = None) -> str:
        """
        Run ``command``, optionally feeding ``stdin`` to it.

        Secrets (private keys) must go through ``stdin``, never the command line.

        Raises:
            CommandExecutionError: If the command fails.
            BackendConnectivityError: If the host cannot be reached (SSH).
            BackendAuthenticationError: If credentials are missing or rejected (SSH).
        """
        pass

    async def test_connection(self) -> Tuple[bool, Optional[str]]:
        """Check the transport works end to end."""
        try:
            await self.execute('echo "test"')
            return True, None
        except Exception as e:
            return False, str(e)


class LocalExecutor(AbstractCommandExecutor):
    """Executes commands on the provisioning host."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.command_timeout

    async def execute(self, command: str, stdin: Optional[str] = None) -> str:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin.encode() if stdin is not None else None),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise CommandExecutionError(
                f"Command timed out after {self.timeout}s",
                command=command,
            )

        out = stdout.decode("utf-8", errors="ignore")
        err = stderr.decode("utf-8", errors="ignore")

        if proc.returncode != 0:
            raise CommandExecutionError(
                f"Command failed with code {proc.returncode}: {(err or out).strip()}",
                command=command,
                exit_status=proc.returncode,
                stderr=err,
                stdout=out,
            )

        if err.strip() and not WARNING_PATTERN.search(err):
            raise CommandExecutionError(
                f"Command failed: {err.strip()}",
                command=command,
                exit_status=proc.returncode,
                stderr=err,
                stdout=out,
            )

        return out


class SSHExecutor(AbstractCommandExecutor):
    """Executes commands on a remote host over SSH."""

    def __init__(
        self,
        config: SSHConfig,
        default_host: str,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.config = config
        self.host = config.host or default_host
        self.port = config.port
        self.timeout = timeout if timeout is not None else settings.command_timeout
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.ssh_connect_timeout
        )

    def _connect_kwargs(self) -> dict:
        auth = self.config.auth
        if auth is None:
            raise SSHAuthenticationNotProvided(
                f"SSH authentication credentials not provided for {self.host}:{self.port}"
            )

        connect_kwargs = {
            "host": self.host,
            "port": self.port,
            "username": self.config.username,
            "known_hosts": None,  # VPN hosts are addressed by IP and rebuilt often
            "connect_timeout": self.connect_timeout,
            "agent_path": None,
        }

        if isinstance(auth, PrivateKeyAuth):
            passphrase = auth.passphrase.get_secret_value() if auth.passphrase else None
            try:
                key = asyncssh.import_private_key(auth.private_key.get_secret_value(), passphrase)
            except (asyncssh.KeyImportError, ValueError) as e:
                raise BackendAuthenticationError(
                    f"Invalid SSH private key for {self.host}:{self.port}: {e}"
                ) from e
            connect_kwargs["client_keys"] = [key]
            connect_kwargs["password"] = None
        elif isinstance(auth, PasswordAuth):
            connect_kwargs["client_keys"] = None
            connect_kwargs["password"] = auth.password.get_secret_value()

        return connect_kwargs

    async def execute(self, command: str, stdin: Optional[str] = None) -> str:
        connect_kwargs = self._connect_kwargs()
        target = f"{self.host}:{self.port}"
        connected = False

        try:
            async with asyncssh.connect(**connect_kwargs) as conn:
                connected = True
                result = await asyncio.wait_for(
                    conn.run(command, input=stdin, check=False),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError as e:
            if not connected:
                raise BackendConnectivityError(
                    f"SSH connection to {target} timed out after {self.connect_timeout}s",
                    reason="timeout",
                ) from e
            raise BackendConnectivityError(
                f"SSH command timed out after {self.timeout}s on {target}",
                reason="timeout",
            ) from e
        except asyncssh.PermissionDenied as e:
            raise BackendAuthenticationError(
                f"SSH authentication failed for {self.config.username}@{target}: {e.reason}"
            ) from e
        except asyncssh.Error as e:
            raise BackendConnectivityError(f"SSH error on {target}: {e}") from e
        except OSError as e:
            raise BackendConnectivityError(
                f"Cannot connect to {target} over SSH: {e}",
                reason="refused" if isinstance(e, ConnectionRefusedError) else "unreachable",
            ) from e

        stdout = _as_text(result.stdout)
        stderr = _as_text(result.stderr)

        if result.exit_status != 0:
            raise CommandExecutionError(
                f"Command failed with code {result.exit_status} on {target}: "
                f"{(stderr or stdout).strip()}",
                command=command,
                exit_status=result.exit_status,
                stderr=stderr,
                stdout=stdout,
            )

        return stdout


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="ignore")
    return data


def create_executor(server: VpnServer) -> AbstractCommandExecutor:
    """Pick the executor matching the server's WireGuard access method."""
    wg = server.wireguard
    if wg is not None and wg.access_method == AccessMethod.SSH:
        if wg.ssh is None:
            raise SSHAuthenticationNotProvided(
                f"Server {server.label} uses SSH access but has no SSH settings"
            )
        return SSHExecutor(wg.ssh, default_host=server.host)
    return LocalExecutor()
