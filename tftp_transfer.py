"""
Per-transfer TFTP state machines.

ReadTransfer serves a file to the peer (the server side of an RRQ):

    SendBlock -> AwaitAck -> Acked -> SendBlock(next) ... -> Done

WriteTransfer stores a file sent by the peer (the server side of a WRQ):

    SendAck(0) -> AwaitData -> Write + SendAck(n) -> AwaitData ... -> Done

Both are lock-step: block n+1 is never sent or accepted before block n is
acknowledged. Every wait is bounded by `timeout` seconds. When it expires
the last packet is retransmitted and a fresh wait starts; after
`max_retries` retransmissions the transfer is aborted. Stray packets
(wrong opcode, wrong block number, garbage) are logged and absorbed without
extending the current wait.

A transfer owns its file handle and closes it when it reaches a terminal
state. The client reuses both classes in the opposite role by passing its
request packet to run(): ReadTransfer then waits for ACK 0 before sending
(put), WriteTransfer waits for DATA 1 instead of sending ACK 0 (get).
"""
import errno
import logging
import socket
import time

from tftp_packet import (BLOCK_SIZE, Ack, Data, Error, ErrorCode, MalformedPacket,
                         decode, next_block)

DEFAULT_TIMEOUT = 5.0
DEFAULT_MAX_RETRIES = 5

logger = logging.getLogger(__name__)


class TransferError(Exception):
    """A transfer cannot continue. `code` is what the peer is told."""
    code = ErrorCode.NOT_DEFINED

    def __init__(self, message, code=None):
        super().__init__(message)
        if code is not None:
            self.code = code


class FileOpenFailure(TransferError):
    pass


class FileIOFailure(TransferError):
    pass


class TransferTimeout(TransferError):
    pass


class TransportFailure(TransferError):
    pass


class PeerError(TransferError):
    """The peer sent an ERROR packet and the transfer gives up on it."""


class ProtocolViolation(Exception):
    """Unexpected packet during a wait. Logged and absorbed, never fatal."""


class Transfer:
    direction = None
    expected_kind = None

    def __init__(self, channel, file_handle, filename, timeout=DEFAULT_TIMEOUT,
                 max_retries=DEFAULT_MAX_RETRIES, logger=logger, abort_on_peer_error=False):
        self.channel = channel
        self.peer = channel.peer
        self.file_handle = file_handle
        self.filename = filename
        self.timeout = timeout
        self.max_retries = max_retries
        self.logger = logger
        self.abort_on_peer_error = abort_on_peer_error
        self.block = 0
        self.blocks = 0
        self.bytes_transferred = 0
        self.timeouts = 0
        self.retransmits = 0
        self.ack_errors = 0
        self.duplicate_blocks = 0
        self.completed = False
        self.error = None
        self.start_time = time.time()

    def __repr__(self):
        return f"<{type(self).__name__} {self.filename!r} peer={self.peer} block={self.block}>"

    @property
    def peer_name(self):
        return f"{self.peer[0]}:{self.peer[1]}"

    def run(self, request=None):
        """Drive the transfer to a terminal state. Returns True on success."""
        self.logger.info(f"{self.direction.upper()} {self.filename} with {self.peer_name} started")
        try:
            self._run(request)
            self.completed = True
        except TransferError as e:
            self.error = e
            self.logger.error(f"TRANSFER FAILED: {self.filename} with {self.peer_name}: {e}")
            if not isinstance(e, PeerError):
                self._send_error(e.code, str(e))
        finally:
            self.close()

        if self.completed:
            elapsed = time.time() - self.start_time
            rate = self.bytes_transferred / elapsed if elapsed > 0 else 0
            self.logger.info(f"TRANSFER SUCCESS: {self.filename} ({self.bytes_transferred:,}B in "
                             f"{self.blocks} blocks, {elapsed:.2f}s, {rate:,.0f}B/s, "
                             f"{self.retransmits} retransmits, {self.ack_errors} ACK block errors)")
        return self.completed

    def close(self):
        if self.file_handle.closed:
            return
        try:
            self.file_handle.close()
        except OSError as e:
            self.logger.error(f"Closing {self.filename} failed: {e}")

    def _run(self, request):
        raise NotImplementedError

    def _send(self, data):
        try:
            self.channel.send(data)
        except OSError as e:
            raise TransportFailure(f"send to {self.peer_name} failed: {e}") from e

    def _send_error(self, code, message):
        try:
            self.channel.send(Error(code, message).to_bytes())
        except OSError as e:
            self.logger.warning(f"Could not send ERROR to {self.peer_name}: {e}")

    def _await(self, outgoing, block):
        """Wait for the packet answering `outgoing`, retransmitting it on timeout."""
        retries = 0
        deadline = time.monotonic() + self.timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise socket.timeout("timed out")
                raw = self.channel.receive(remaining)
            except socket.timeout:
                self.timeouts += 1
                if retries >= self.max_retries:
                    raise TransferTimeout(f"no {self.expected_kind} {block} from {self.peer_name} "
                                          f"after {retries} retransmissions") from None
                retries += 1
                self.retransmits += 1
                self.logger.warning(f"Timeout waiting for {self.expected_kind} {block}, "
                                    f"retransmitting ({retries}/{self.max_retries})")
                self._send(outgoing)
                deadline = time.monotonic() + self.timeout
                continue
            except OSError as e:
                raise TransportFailure(f"receive from {self.peer_name} failed: {e}") from e

            try:
                packet = decode(raw)
            except MalformedPacket as e:
                self.logger.warning(f"Malformed packet from {self.peer_name}: {e}")
                continue

            if isinstance(packet, Error):
                self.logger.warning(f"ERROR {packet.code} from {self.peer_name}: {packet.message}")
                if self.abort_on_peer_error:
                    raise PeerError(f"peer reported error {packet.code}: {packet.message}",
                                    code=packet.code)
                continue

            try:
                self._check(packet, block)
            except ProtocolViolation as e:
                self.logger.info(str(e))
                self._out_of_sequence(packet, outgoing)
                continue
            return packet

    def _check(self, packet, block):
        raise NotImplementedError

    def _out_of_sequence(self, packet, outgoing):
        pass


class ReadTransfer(Transfer):
    direction = 'read'
    expected_kind = 'ACK'

    def _run(self, request=None):
        if request is not None:
            # Client put: the server accepts the WRQ with ACK 0.
            self._send(request)
            self._await(request, 0)

        # First DATA is the block after the current one: 1 for a fresh transfer.
        self.block = next_block(self.block)
        while True:
            chunk = self._read_block()
            outgoing = Data(self.block, chunk).to_bytes()
            self._send(outgoing)
            self.logger.debug(f"DATA {self.block} sent to {self.peer_name} ({len(chunk)} bytes)")
            self._await(outgoing, self.block)
            self.blocks += 1
            self.bytes_transferred += len(chunk)
            if len(chunk) < BLOCK_SIZE:
                break
            self.block = next_block(self.block)

    def _read_block(self):
        try:
            return self.file_handle.read(BLOCK_SIZE)
        except OSError as e:
            raise FileIOFailure(f"reading {self.filename} failed: {e}") from e

    def _check(self, packet, block):
        if not isinstance(packet, Ack):
            raise ProtocolViolation(f"Expected ACK {block} from {self.peer_name}, got {packet.opcode.name}")
        if packet.block != block:
            raise ProtocolViolation(f"ACK {packet.block} from {self.peer_name} while waiting for ACK {block}")

    def _out_of_sequence(self, packet, outgoing):
        if isinstance(packet, Ack):
            self.ack_errors += 1
            self.retransmits += 1
            self.logger.info(f"Resending block {self.block} to {self.peer_name}")
            self._send(outgoing)


class WriteTransfer(Transfer):
    direction = 'write'
    expected_kind = 'DATA'

    def _run(self, request=None):
        # Server side: ACK 0 says "ready for block 1". Client get: the RRQ does.
        outgoing = request if request is not None else Ack(0).to_bytes()
        self._send(outgoing)

        while True:
            expected = next_block(self.block)
            packet = self._await(outgoing, expected)
            self._write_block(packet)
            outgoing = Ack(packet.block).to_bytes()
            self._send(outgoing)
            self.logger.debug(f"DATA {packet.block} from {self.peer_name} written "
                              f"({len(packet.payload)} bytes), ACK sent")
            self.block = packet.block
            self.blocks += 1
            self.bytes_transferred += len(packet.payload)
            if packet.is_last:
                break

    def _write_block(self, packet):
        try:
            self.file_handle.write(packet.payload)
            if packet.is_last:
                self.file_handle.flush()
        except OSError as e:
            code = ErrorCode.DISK_FULL if e.errno == errno.ENOSPC else ErrorCode.NOT_DEFINED
            raise FileIOFailure(f"writing {self.filename} failed: {e}", code=code) from e

    def _check(self, packet, block):
        if not isinstance(packet, Data):
            raise ProtocolViolation(f"Expected DATA {block} from {self.peer_name}, got {packet.opcode.name}")
        if packet.block != block:
            raise ProtocolViolation(f"DATA {packet.block} from {self.peer_name} while waiting for DATA {block}")

    def _out_of_sequence(self, packet, outgoing):
        if isinstance(packet, Data):
            self.duplicate_blocks += 1
