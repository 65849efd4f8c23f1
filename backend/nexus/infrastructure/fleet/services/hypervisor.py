"""
Hypervisor Client - Virtualization backend operations for target VMs

Features:
- Abstract client interface (fakes plug in for tests)
- libvirt implementation driving virsh / virt-clone / virt-customize
- Per-command timeout
- Static DHCP reservations on the range network
"""

import asyncio
import re
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from ..exceptions import HypervisorError

logger = structlog.get_logger(__name__)


IPV4_PATTERN = re.compile(r"(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})")
MAC_PATTERN = re.compile(r"((?:[0-9a-f]{2}:){5}[0-9a-f]{2})", re.IGNORECASE)


class HypervisorClient(ABC):
    """Operations the fleet needs from a virtualization backend."""

    @abstractmethod
    async def clone(self, base_image: str, vm_id: str) -> None:
        """Clone a base image into a new, stopped VM."""

    @abstractmethod
    async def run_command(self, vm_id: str, command: str) -> str:
        """Run a configuration command against a VM and return its output."""

    @abstractmethod
    async def reserve_address(self, vm_id: str, address: str) -> None:
        """Register a static address reservation for the VM."""

    @abstractmethod
    async def start(self, vm_id: str) -> None:
        """Start a VM."""

    @abstractmethod
    async def graceful_stop(self, vm_id: str) -> None:
        """Ask the guest to shut down."""

    @abstractmethod
    async def force_stop(self, vm_id: str) -> None:
        """Power the VM off immediately."""

    @abstractmethod
    async def is_running(self, vm_id: str) -> bool:
        """Check whether the VM is powered on."""

    @abstractmethod
    async def snapshot_create(self, vm_id: str, name: str) -> None:
        """Create a disk-only, atomic snapshot."""

    @abstractmethod
    async def snapshot_revert(self, vm_id: str, name: str) -> None:
        """Revert a VM to a named snapshot."""

    @abstractmethod
    async def get_assigned_address(self, vm_id: str) -> Optional[str]:
        """Get the address the VM currently holds, if any."""

    @abstractmethod
    async def destroy_and_remove_storage(self, vm_id: str) -> None:
        """Deregister the VM and delete its storage."""


class VirshHypervisor(HypervisorClient):
    """
    libvirt/KVM hypervisor client.

    Configuration commands are applied offline with virt-customize, so the
    cloned domain does not need to be running or reachable yet.
    """

    VIRSH_BINARY = "virsh"
    VIRT_CLONE_BINARY = "virt-clone"
    VIRT_CUSTOMIZE_BINARY = "virt-customize"

    def __init__(
        self,
        uri: str = "qemu:///system",
        network: str = "default",
        command_timeout: float = 60.0,
    ):
        self.uri = uri
        self.network = network
        self.command_timeout = command_timeout

    async def clone(self, base_image: str, vm_id: str) -> None:
        await self._run(
            self.VIRT_CLONE_BINARY,
            "--connect", self.uri,
            "--original", base_image,
            "--name", vm_id,
            "--auto-clone",
        )

    async def run_command(self, vm_id: str, command: str) -> str:
        return await self._run(
            self.VIRT_CUSTOMIZE_BINARY,
            "--connect", self.uri,
            "-d", vm_id,
            "--run-command", command,
        )

    async def reserve_address(self, vm_id: str, address: str) -> None:
        output = await self._virsh("domiflist", vm_id)
        match = MAC_PATTERN.search(output)
        if not match:
            raise HypervisorError(f"No network interface found for {vm_id}")

        host_xml = f"<host mac='{match.group(1)}' ip='{address}'/>"
        await self._virsh(
            "net-update", self.network, "add", "ip-dhcp-host", host_xml,
            "--live", "--config",
        )

    async def start(self, vm_id: str) -> None:
        await self._virsh("start", vm_id)

    async def graceful_stop(self, vm_id: str) -> None:
        await self._virsh("shutdown", vm_id)

    async def force_stop(self, vm_id: str) -> None:
        await self._virsh("destroy", vm_id)

    async def is_running(self, vm_id: str) -> bool:
        output = await self._virsh("domstate", vm_id)
        return output.strip() == "running"

    async def snapshot_create(self, vm_id: str, name: str) -> None:
        await self._virsh(
            "snapshot-create-as", vm_id, name, "--disk-only", "--atomic",
        )

    async def snapshot_revert(self, vm_id: str, name: str) -> None:
        await self._virsh("snapshot-revert", vm_id, name)

    async def get_assigned_address(self, vm_id: str) -> Optional[str]:
        try:
            output = await self._virsh("domifaddr", vm_id)
        except HypervisorError as e:
            logger.debug("Address lookup failed", vm_id=vm_id, error=str(e))
            return None

        match = IPV4_PATTERN.search(output)
        return match.group(1) if match else None

    async def destroy_and_remove_storage(self, vm_id: str) -> None:
        await self._virsh("undefine", vm_id, "--remove-all-storage")

    async def _virsh(self, *args: str) -> str:
        return await self._run(self.VIRSH_BINARY, "--connect", self.uri, *args)

    async def _run(self, *cmd: str) -> str:
        """Run a command, returning stdout or raising HypervisorError."""
        command_line = " ".join(cmd)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise HypervisorError(f"Cannot execute {cmd[0]}: {e}", command_line) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=self.command_timeout,
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise HypervisorError(
                f"Command timed out after {self.command_timeout}s", command_line
            ) from e

        if proc.returncode != 0:
            raise HypervisorError(
                f"{cmd[0]} exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}",
                command_line,
            )

        logger.debug("Hypervisor command completed", command=command_line)
        return stdout.decode(errors="replace")

