import socket
import socketserver
import threading

import pytest

from kasa_exporter import codec
from kasa_exporter.models import Reading


def realtime_v2(current_ma=250, voltage_mv=123100, power_mw=30000, total_wh=10):
    return {
        "current_ma": current_ma,
        "voltage_mv": voltage_mv,
        "power_mw": power_mw,
        "total_wh": total_wh,
        "err_code": 0,
    }


def plug_response(device_id="8006AA", alias="Plug", model="KP115(EU)", hw_ver="1.0", realtime=None):
    return {
        "system": {"get_sysinfo": {"deviceId": device_id, "alias": alias, "model": model, "hw_ver": hw_ver, "err_code": 0}},
        "emeter": {"get_realtime": realtime if realtime is not None else realtime_v2()},
    }


def make_reading(current=0.25, voltage=123.1, power=30.0, energy=1000.0, at=1000.0):
    return Reading(current, voltage, power, energy, at)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeClient:
    """Answers device queries from a table keyed by address."""

    def __init__(self, outcomes=None):
        self.outcomes = dict(outcomes or {})
        self.calls = []

    def query(self, address, payload=None, connect_timeout=2.0, read_timeout=3.0, schema=None):
        self.calls.append((address, schema))
        o = self.outcomes[address]
        return o() if callable(o) else o


class FakeSource:
    def __init__(self, candidates=None, error=None, name="fake"):
        self.candidates = list(candidates or [])
        self.error = error
        self.name = name

    def fetch(self):
        if self.error is not None:
            raise self.error
        return list(self.candidates)


def _recv_exactly(sock, n):
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            return buf
        buf += chunk
    return buf


class _PlugHandler(socketserver.BaseRequestHandler):
    def handle(self):
        plug = self.server.plug
        header = _recv_exactly(self.request, 4)
        if len(header) < 4:
            return
        body = _recv_exactly(self.request, codec.frame_length(header))
        plug.requests.append(codec.decode(header + body))

        if plug.mode == "silent":
            plug.release.wait(5)
        elif plug.mode == "close":
            return
        elif plug.mode == "garbage":
            junk = codec.encrypt(b"this is not json")
            self.request.sendall(codec.HEADER.pack(len(junk)) + junk)
        elif plug.mode == "truncated":
            self.request.sendall(codec.HEADER.pack(100) + b"abc")
        else:
            self.request.sendall(codec.encode(plug.response))


class _PlugServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class FakePlug:
    def __init__(self, response=None, mode="ok"):
        self.response = response if response is not None else plug_response()
        self.mode = mode
        self.requests = []
        self.release = threading.Event()
        self.server = _PlugServer(("127.0.0.1", 0), _PlugHandler)
        self.server.plug = self
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()

    @property
    def address(self):
        host, port = self.server.server_address[:2]
        return f"{host}:{port}"

    def close(self):
        self.release.set()
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture
def fake_plug():
    plugs = []

    def factory(response=None, mode="ok"):
        p = FakePlug(response, mode)
        plugs.append(p)
        return p

    yield factory
    for p in plugs:
        p.close()


@pytest.fixture
def closed_address():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return f"127.0.0.1:{port}"


@pytest.fixture
def clock():
    return FakeClock()
