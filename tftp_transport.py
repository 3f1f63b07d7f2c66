"""
Datagram transport seen from one transfer.

A transfer only ever talks to a single peer (its TID, the client's
host/port pair). It needs two things from the network: send a datagram to
that peer, and wait a bounded time for the next datagram from that peer.
Two channel flavours provide this:

- SocketChannel polls the socket itself and discards datagrams from any
  other address. Used when the server runs one transfer at a time, and by
  the client.
- InboxChannel is fed by the server's listening loop, which routes every
  datagram to the transfer that owns its source address. Used when each
  transfer runs in its own thread while the listener keeps accepting
  requests on the same socket.

Both raise socket.timeout when nothing arrives in time.
"""
import logging
import queue
import socket
import struct
import time

from tftp_packet import RECV_BUFFER_SIZE, Error, ErrorCode, Opcode

REQUEST_OPCODES = (struct.pack('!H', Opcode.RRQ), struct.pack('!H', Opcode.WRQ))

logger = logging.getLogger(__name__)


class SocketChannel:
    def __init__(self, sock, peer, logger=logger):
        self.sock = sock
        self.peer = peer
        self.logger = logger

    def send(self, data):
        self.sock.sendto(data, self.peer)

    def receive(self, timeout):
        # The deadline covers the whole call, datagrams from strangers do not extend it.
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("timed out")
            self.sock.settimeout(remaining)
            data, addr = self.sock.recvfrom(RECV_BUFFER_SIZE)
            if addr == self.peer:
                return data
            if data[:2] in REQUEST_OPCODES:
                # A new client asking for a transfer, turned away like in concurrent mode.
                self.logger.warning(f"Rejecting request from {addr[0]}:{addr[1]}, "
                                    f"busy with {self.peer[0]}:{self.peer[1]}")
                reply = Error(ErrorCode.NOT_DEFINED, "Server busy")
            else:
                self.logger.warning(f"Datagram from unknown TID {addr[0]}:{addr[1]}, "
                                    f"busy with {self.peer[0]}:{self.peer[1]}")
                reply = Error(ErrorCode.UNKNOWN_TID, "Unknown transfer ID")
            try:
                self.sock.sendto(reply.to_bytes(), addr)
            except OSError as e:
                self.logger.debug(f"Could not answer stranger {addr}: {e}")


class InboxChannel:
    def __init__(self, sock, peer):
        self.sock = sock
        self.peer = peer
        self.inbox = queue.Queue()

    def put(self, data):
        # Called from the listener thread.
        self.inbox.put(data)

    def send(self, data):
        self.sock.sendto(data, self.peer)

    def receive(self, timeout):
        try:
            return self.inbox.get(timeout=timeout)
        except queue.Empty:
            raise socket.timeout("timed out") from None
