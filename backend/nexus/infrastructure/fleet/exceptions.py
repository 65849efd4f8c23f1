"""Fleet exception classes."""

from typing import Optional


class FleetError(Exception):
    """Base exception for VM fleet operations."""
    pass


class HypervisorError(FleetError):
    """A hypervisor command failed or timed out."""

    def __init__(self, message: str, command: Optional[str] = None):
        self.command = command
        super().__init__(message)


class AddressExhaustedError(FleetError):
    """A tier has used up its reserved address block."""

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Address block exhausted for {tier}")


class ProvisionError(FleetError):
    """A provisioning pipeline step failed."""

    def __init__(self, message: str, vm_id: Optional[str] = None, step: Optional[str] = None):
        self.vm_id = vm_id
        self.step = step
        prefix = f"Provisioning {vm_id} failed" if vm_id else "Provisioning failed"
        if step:
            prefix = f"{prefix} at {step}"
        super().__init__(f"{prefix}: {message}")


class SnapshotError(FleetError):
    """Snapshot creation failed."""

    def __init__(self, message: str, vm_id: str, name: str):
        self.vm_id = vm_id
        self.name = name
        super().__init__(f"Snapshot {name} of {vm_id} failed: {message}")


class RestoreError(FleetError):
    """Restoring a VM to a snapshot failed."""

    def __init__(self, message: str, vm_id: str, name: str):
        self.vm_id = vm_id
        self.name = name
        super().__init__(f"Restore of {vm_id} to {name} failed: {message}")


class VMNotFoundError(FleetError, LookupError):
    """VM not registered in the fleet."""

    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__(f"VM not found: {vm_id}")


class RoundNotFoundError(FleetError, LookupError):
    """No VMs registered for an exercise round."""

    def __init__(self, round_id: str):
        self.round_id = round_id
        super().__init__(f"Round not found: {round_id}")
