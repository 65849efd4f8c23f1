"""
Network probes - reachability and TCP port checks against target VMs

Probe failures are ordinary outcomes and are reported as False.
"""

import asyncio
import math

import structlog

logger = structlog.get_logger(__name__)


class NetworkProber:
    """ICMP reachability and TCP connect checks."""

    PING_BINARY = "ping"

    async def reachable(self, address: str, timeout: float) -> bool:
        """Send a single ping and wait at most `timeout` seconds."""
        wait_seconds = str(max(1, math.ceil(timeout)))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.PING_BINARY, "-c", "1", "-W", wait_seconds, address,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Ping unavailable", address=address, error=str(e))
            return False

        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout + 1)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False

        return proc.returncode == 0

    async def port_open(self, address: str, port: int, timeout: float) -> bool:
        """Check that a TCP connection to address:port succeeds."""
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(address, port),
                timeout=timeout,
            )
            writer.close()
            await writer.wait_closed()
            return True

        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(
                "TCP probe failed",
                address=address,
                port=port,
                error=str(e),
            )
            return False
