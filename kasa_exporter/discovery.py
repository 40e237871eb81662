from __future__ import annotations

import logging
import socket
import time
from typing import Any, Dict, List, Optional, Tuple

from . import codec
from .device import DEFAULT_PORT, format_address
from .errors import CodecError, DirectoryError
from .models import DeviceCandidate

log = logging.getLogger(__name__)

DISCOVERY_QUERY: Dict[str, Any] = {"system": {"get_sysinfo": {}}, "emeter": {"get_realtime": {}}}
MAX_DATAGRAM = 4096


def candidate_from_reply(reply: Any, host: str, device_port: int = DEFAULT_PORT) -> Optional[DeviceCandidate]:
    if not isinstance(reply, dict):
        return None
    system = reply.get("system")
    if not isinstance(system, dict):
        return None
    sysinfo = system.get("get_sysinfo")
    if not isinstance(sysinfo, dict):
        return None
    device_id = sysinfo.get("deviceId")
    if not device_id:
        return None
    return DeviceCandidate(
        device_id=str(device_id),
        alias=str(sysinfo.get("alias", "")),
        address=format_address(host, device_port),
        model=str(sysinfo.get("model", "")),
        hw_ver=str(sysinfo.get("hw_ver", "")),
        source="discovery",
    )


def discover(
    timeout: float = 3.0,
    broadcast_address: str = "255.255.255.255",
    port: int = DEFAULT_PORT,
    device_port: int = DEFAULT_PORT,
) -> List[DeviceCandidate]:
    """Broadcast a sysinfo query and collect replies for ``timeout`` seconds.

    Replies that fail to decode are logged and skipped. When a source address
    answers more than once, its last reply wins.
    """
    found: Dict[Tuple[str, int], DeviceCandidate] = {}
    message = codec.encode_datagram(DISCOVERY_QUERY)

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.bind(("", 0))
        sock.sendto(message, (broadcast_address, port))

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                data, src = sock.recvfrom(MAX_DATAGRAM)
            except socket.timeout:
                break
            except ConnectionRefusedError:
                # ICMP port unreachable from a unicast target
                continue

            try:
                reply = codec.decode_datagram(data)
            except CodecError as e:
                log.warning("discovery reply dropped source=%s:%s error=%s", src[0], src[1], e)
                continue

            cand = candidate_from_reply(reply, src[0], device_port)
            if cand is None:
                log.warning("discovery reply dropped source=%s:%s error=missing_sysinfo", src[0], src[1])
                continue
            found[(src[0], src[1])] = cand

    log.debug("discovery finished broadcast=%s devices=%d", broadcast_address, len(found))
    return list(found.values())


class DiscoverySource:
    name = "discovery"

    def __init__(
        self,
        timeout: float = 3.0,
        broadcast_address: str = "255.255.255.255",
        port: int = DEFAULT_PORT,
        device_port: int = DEFAULT_PORT,
    ) -> None:
        self.timeout = timeout
        self.broadcast_address = broadcast_address
        self.port = port
        self.device_port = device_port

    def fetch(self) -> List[DeviceCandidate]:
        try:
            return discover(self.timeout, self.broadcast_address, self.port, self.device_port)
        except OSError as e:
            raise DirectoryError(f"discovery failed: {e}") from e
