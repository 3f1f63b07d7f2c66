import socket

import pytest

from tftp_packet import decode

CLIENT = ('127.0.0.1', 50000)


class FakeChannel:
    """Scripted channel: each receive() pops the next response, None means a timeout."""

    def __init__(self, responses, peer=CLIENT):
        self._responses = list(responses)
        self.peer = peer
        self.sent = []
        self.timeouts_requested = []

    def send(self, data):
        self.sent.append(data)

    def receive(self, timeout):
        self.timeouts_requested.append(timeout)
        if not self._responses:
            raise socket.timeout()
        item = self._responses.pop(0)
        if item is None:
            raise socket.timeout()
        return item

    @property
    def packets(self):
        return [decode(d) for d in self.sent]


class MockSocket:
    def __init__(self, responses=()):
        # responses: (packet_bytes, (ip, port)) tuples returned by recvfrom
        self._responses = list(responses)
        self.sent = []
        self.timeout = None
        self.closed = False

    def settimeout(self, t):
        self.timeout = t

    def gettimeout(self):
        return self.timeout

    def sendto(self, pkt, addr):
        self.sent.append((pkt, addr))

    def recvfrom(self, n):
        if not self._responses:
            raise socket.timeout()
        return self._responses.pop(0)

    def getsockname(self):
        return ('127.0.0.1', 6969)

    def close(self):
        self.closed = True

    def packets_to(self, addr):
        return [decode(pkt) for pkt, dest in self.sent if dest == addr]


@pytest.fixture
def make_file(tmp_path):
    def _make(size, name='source.bin'):
        path = tmp_path / name
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return path
    return _make
