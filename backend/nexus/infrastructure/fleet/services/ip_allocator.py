"""
IP Allocator - Per-tier address blocks inside the range subnet

Each tier owns a contiguous block of host offsets:
- tier1: base_ip_start .. base_ip_start + block_size - 1
- tier2: the next block
- tier3: the block after that

Addresses are handed out once and never reclaimed.
"""

import ipaddress
from typing import Dict, Union

import structlog

from ..exceptions import AddressExhaustedError
from ..models import Tier

logger = structlog.get_logger(__name__)


class IPAllocator:
    """Hands out unique addresses per tier."""

    def __init__(
        self,
        network_range: str = "192.168.100.0/24",
        base_ip_start: int = 10,
        block_size: int = 10,
    ):
        self.network = ipaddress.IPv4Network(network_range)
        self.block_size = block_size

        self._block_start: Dict[Tier, int] = {}
        self._next_offset: Dict[Tier, int] = {}
        for index, tier in enumerate(Tier):
            start = base_ip_start + index * block_size
            self._block_start[tier] = start
            self._next_offset[tier] = start

    def allocate(self, tier: Union[Tier, str]) -> str:
        """
        Allocate the next address for a tier.

        Raises:
            AddressExhaustedError: If the tier's block (or the subnet) is used up
        """
        tier = Tier(tier)
        offset = self._next_offset[tier]

        if offset >= self._block_start[tier] + self.block_size:
            raise AddressExhaustedError(tier.value)
        # Keep clear of the broadcast address
        if offset >= self.network.num_addresses - 1:
            raise AddressExhaustedError(tier.value)

        self._next_offset[tier] = offset + 1
        address = str(self.network.network_address + offset)

        logger.debug("Allocated address", tier=tier.value, address=address)
        return address

    def remaining(self, tier: Union[Tier, str]) -> int:
        """Number of addresses still available to a tier."""
        tier = Tier(tier)
        end = min(
            self._block_start[tier] + self.block_size,
            self.network.num_addresses - 1,
        )
        return max(0, end - self._next_offset[tier])
