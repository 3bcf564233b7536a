"""
ICMP reachability probe using the system ping(8).
"""

import re
from dataclasses import dataclass
from typing import Optional

from structlog import get_logger

from src.common.errors import CommandTimeoutError, ProbeError
from src.server.executor import CommandExecutor

logger = get_logger()

RTT_PATTERN = re.compile(r"time[=<]([0-9.]+)\s*ms")


@dataclass
class PingResult:
    alive: bool
    latency_ms: float = 0.0
    payload_size: int = 0


class IcmpProber:
    """Sends single echo requests of a given payload size."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    def ping(
        self,
        host: str,
        payload_size: int,
        timeout: float = 2.0,
        interface: Optional[str] = None
    ) -> PingResult:
        """
        Send one echo request.

        Args:
            host: Target address
            payload_size: ICMP payload in bytes (MTU minus 28 for a full frame)
            timeout: Seconds to wait for the reply
            interface: Source interface to send through

        Returns:
            Ping result; alive is False when no reply arrived

        Raises:
            ProbeError: If ping did not exit within its timeout
        """
        # -M do: never fragment
        args = ["ping", "-n", "-M", "do", "-c", "1", "-W", str(max(1, int(round(timeout)))), "-s", str(payload_size)]
        if interface:
            args += ["-I", interface]
        args.append(host)

        try:
            # allow ping a second beyond its own deadline before killing it
            result = self.executor.run(args, timeout=timeout + 1, check=False)
        except CommandTimeoutError as e:
            raise ProbeError(f"ping {host} size {payload_size} timed out") from e

        if not result.ok:
            return PingResult(alive=False, payload_size=payload_size)

        match = RTT_PATTERN.search(result.stdout)
        latency = float(match.group(1)) if match else 0.0
        return PingResult(alive=True, latency_ms=latency, payload_size=payload_size)
