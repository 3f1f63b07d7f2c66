"""
TFTP packet codec (RFC 1350 subset)

Every datagram starts with a 2-byte big-endian opcode followed by an
opcode-specific body:

    RRQ/WRQ  | 01/02 | filename | 0 | mode | 0 |
    DATA     | 03    | block (2) | payload (0-512) |
    ACK      | 04    | block (2) |
    ERROR    | 05    | code (2)  | message | 0 |

Packets are immutable dataclasses. `decode()` turns raw bytes into one of
them or raises MalformedPacket; `encode()` is the exact inverse. Block
numbers are unsigned 16-bit values and wrap modulo 65536.
"""
import enum
import os
import struct
from dataclasses import dataclass
from typing import Union

BLOCK_SIZE = 512               # Fixed block size, no negotiation.
MAX_DATA_PACKET = 4 + BLOCK_SIZE
RECV_BUFFER_SIZE = 1024        # Big enough for any request, ACK, ERROR or DATA.
MAX_BLOCK = 0xFFFF


class Opcode(enum.IntEnum):
    RRQ = 1
    WRQ = 2
    DATA = 3
    ACK = 4
    ERROR = 5


class ErrorCode(enum.IntEnum):
    NOT_DEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TID = 5
    FILE_EXISTS = 6
    NO_SUCH_USER = 7


class MalformedPacket(ValueError):
    """The datagram cannot be decoded as a TFTP packet."""


class UnknownOpcode(MalformedPacket):
    def __init__(self, opcode):
        super().__init__(f"unknown opcode {opcode}")
        self.opcode = opcode


def next_block(block: int) -> int:
    # Block numbers roll over from 65535 to 0.
    return (block + 1) & MAX_BLOCK


def _check_uint16(value: int, what: str) -> None:
    if not 0 <= value <= MAX_BLOCK:
        raise ValueError(f"{what} out of range: {value}")


def _encode_request(opcode: Opcode, filename: str, mode: str) -> bytes:
    name = os.fsencode(filename)
    mode_bytes = mode.encode('ascii')
    if b'\x00' in name or b'\x00' in mode_bytes:
        raise ValueError("filename and mode must not contain NUL")
    return struct.pack('!H', opcode) + name + b'\x00' + mode_bytes + b'\x00'


@dataclass(frozen=True, slots=True)
class ReadRequest:
    filename: str
    mode: str = 'octet'

    opcode = Opcode.RRQ

    def to_bytes(self) -> bytes:
        return _encode_request(self.opcode, self.filename, self.mode)


@dataclass(frozen=True, slots=True)
class WriteRequest:
    filename: str
    mode: str = 'octet'

    opcode = Opcode.WRQ

    def to_bytes(self) -> bytes:
        return _encode_request(self.opcode, self.filename, self.mode)


@dataclass(frozen=True, slots=True)
class Data:
    block: int
    payload: bytes = b''

    opcode = Opcode.DATA

    @property
    def is_last(self) -> bool:
        return len(self.payload) < BLOCK_SIZE

    def to_bytes(self) -> bytes:
        _check_uint16(self.block, "block number")
        if len(self.payload) > BLOCK_SIZE:
            raise ValueError(f"payload too large: {len(self.payload)}")
        return struct.pack('!HH', self.opcode, self.block) + self.payload


@dataclass(frozen=True, slots=True)
class Ack:
    block: int

    opcode = Opcode.ACK

    def to_bytes(self) -> bytes:
        _check_uint16(self.block, "block number")
        return struct.pack('!HH', self.opcode, self.block)


@dataclass(frozen=True, slots=True)
class Error:
    code: int
    message: str = ''

    opcode = Opcode.ERROR

    def to_bytes(self) -> bytes:
        _check_uint16(self.code, "error code")
        text = self.message.encode('utf-8', errors='surrogateescape')
        if b'\x00' in text:
            raise ValueError("error message must not contain NUL")
        return struct.pack('!HH', self.opcode, self.code) + text + b'\x00'


Packet = Union[ReadRequest, WriteRequest, Data, Ack, Error]


def _split_cstring(body: bytes, what: str):
    end = body.find(b'\x00')
    if end == -1:
        raise MalformedPacket(f"{what} is not NUL-terminated")
    return body[:end], body[end + 1:]


def _decode_request(data: bytes):
    raw_name, rest = _split_cstring(data[2:], "filename")
    raw_mode, _options = _split_cstring(rest, "mode")
    try:
        mode = raw_mode.decode('ascii')
    except UnicodeDecodeError:
        raise MalformedPacket("mode is not ASCII") from None
    return os.fsdecode(raw_name), mode


def decode(data: bytes) -> Packet:
    """Parse a raw datagram into a packet object."""
    if len(data) < 2:
        raise MalformedPacket(f"datagram too short ({len(data)} bytes)")
    opcode = struct.unpack('!H', data[:2])[0]

    if opcode == Opcode.RRQ:
        return ReadRequest(*_decode_request(data))
    if opcode == Opcode.WRQ:
        return WriteRequest(*_decode_request(data))
    if opcode not in (Opcode.DATA, Opcode.ACK, Opcode.ERROR):
        raise UnknownOpcode(opcode)

    if len(data) < 4:
        raise MalformedPacket(f"{Opcode(opcode).name} shorter than 4 bytes")
    number = struct.unpack('!H', data[2:4])[0]

    if opcode == Opcode.DATA:
        if len(data) > MAX_DATA_PACKET:
            raise MalformedPacket(f"DATA payload of {len(data) - 4} bytes exceeds {BLOCK_SIZE}")
        return Data(number, data[4:])
    if opcode == Opcode.ACK:
        if len(data) != 4:
            raise MalformedPacket(f"ACK must be 4 bytes, got {len(data)}")
        return Ack(number)

    # Some peers omit the trailing NUL on error messages.
    message = data[4:]
    end = message.find(b'\x00')
    if end != -1:
        message = message[:end]
    return Error(number, message.decode('utf-8', errors='surrogateescape'))


def encode(packet: Packet) -> bytes:
    return packet.to_bytes()
