from __future__ import annotations

import logging
import socket
import time
from typing import Any, Callable, Dict, Optional, Tuple

from . import codec
from .errors import CodecError, ErrorKind, SchemaError
from .models import Failure, PollOutcome, Success
from .schema import resolve_schema, to_reading

log = logging.getLogger(__name__)

DEFAULT_PORT = 9999
MAX_FRAME_BYTES = 1 << 20

POLL_QUERY: Dict[str, Any] = {"system": {"get_sysinfo": {}}, "emeter": {"get_realtime": {}}}


def _split_address(s: str, default_port: int) -> Tuple[str, int]:
    if s.startswith("["):
        host, _, rest = s[1:].partition("]")
        return host, int(rest[1:]) if rest.startswith(":") else default_port
    if s.count(":") == 1:
        host, port_s = s.rsplit(":", 1)
        return host, int(port_s)
    return s, default_port


def parse_address(address: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    host, port = _split_address(str(address).strip(), default_port)
    if not host:
        raise ValueError(f"missing host in {address!r}")
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in {address!r}")
    return host, port


def format_address(host: str, port: int = DEFAULT_PORT) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class _ReadTimeout(Exception):
    pass


class _Closed(Exception):
    pass


def _recv_exactly(sock: socket.socket, n: int, deadline: float) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise _ReadTimeout()
        sock.settimeout(remaining)
        try:
            chunk = sock.recv(n - len(buf))
        except socket.timeout:
            raise _ReadTimeout() from None
        if not chunk:
            raise _Closed(len(buf))
        buf.extend(chunk)
    return bytes(buf)


def read_frame(sock: socket.socket, read_timeout: float) -> Any:
    deadline = time.monotonic() + read_timeout
    header = _recv_exactly(sock, codec.HEADER.size, deadline)
    length = codec.frame_length(header)
    if length > MAX_FRAME_BYTES:
        raise CodecError(f"frame too large: {length} bytes")
    body = _recv_exactly(sock, length, deadline)
    return codec.decode(header + body)


def extract_realtime(response: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    if not isinstance(response, dict):
        raise SchemaError("response is not an object")
    emeter = response.get("emeter")
    if not isinstance(emeter, dict):
        raise SchemaError("response has no emeter block")
    realtime = emeter.get("get_realtime")
    if not isinstance(realtime, dict):
        raise SchemaError("response has no get_realtime block")
    err = realtime.get("err_code", 0)
    if err not in (0, None):
        raise SchemaError(f"emeter err_code={err} msg={realtime.get('err_msg', '')}")

    sysinfo: Dict[str, Any] = {}
    system = response.get("system")
    if isinstance(system, dict) and isinstance(system.get("get_sysinfo"), dict):
        sysinfo = system["get_sysinfo"]
    return realtime, sysinfo


class DeviceClient:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock

    def query(
        self,
        address: str,
        payload: Any = None,
        connect_timeout: float = 2.0,
        read_timeout: float = 3.0,
        schema: Optional[str] = None,
    ) -> PollOutcome:
        if payload is None:
            payload = POLL_QUERY

        try:
            host, port = parse_address(address)
        except ValueError:
            return Failure(ErrorKind.UNREACHABLE, f"bad address {address!r}")

        try:
            sock = socket.create_connection((host, port), timeout=connect_timeout)
        except OSError as e:
            return Failure(ErrorKind.UNREACHABLE, str(e) or type(e).__name__)

        with sock:
            try:
                sock.settimeout(read_timeout)
                sock.sendall(codec.encode(payload))
                response = read_frame(sock, read_timeout)
            except (_ReadTimeout, socket.timeout):
                return Failure(ErrorKind.TIMEOUT, f"no response within {read_timeout:.1f}s")
            except _Closed as e:
                return Failure(ErrorKind.PROTOCOL, f"connection closed after {e.args[0]} bytes")
            except CodecError as e:
                return Failure(ErrorKind.PROTOCOL, str(e))
            except OSError as e:
                return Failure(ErrorKind.UNREACHABLE, str(e) or type(e).__name__)

        observed_at = self.clock()
        try:
            realtime, sysinfo = extract_realtime(response)
            tag = schema or resolve_schema(str(sysinfo.get("model", "")), str(sysinfo.get("hw_ver", "")))
            reading = to_reading(realtime, tag, observed_at)
        except SchemaError as e:
            return Failure(ErrorKind.UNEXPECTED_SCHEMA, str(e))

        log.debug("query ok address=%s power=%.3f", address, reading.power_watts)
        return Success(reading, sysinfo)
