import logging
import socket

import pytest

from conftest import CLIENT, MockSocket
from tftp_packet import (BLOCK_SIZE, Ack, Data, Error, ErrorCode, ReadRequest, WriteRequest)
from tftp_server import DEFAULT_CONFIG, TFTPServer
from tftp_transport import InboxChannel

OTHER = ('127.0.0.1', 40000)


@pytest.fixture
def serial_server():
    server = TFTPServer(concurrent=False, log_file=None, timeout=0.5, max_retries=1)
    server.sock = MockSocket()
    return server


def respond(server, *packets, addr=CLIENT):
    server.sock._responses.extend((p.to_bytes(), addr) for p in packets)


def test_rrq_for_missing_file_sends_error_only(serial_server, tmp_path):
    missing = tmp_path / "nope.bin"
    serial_server.handle_request(ReadRequest(str(missing)).to_bytes(), CLIENT)

    [packet] = serial_server.sock.packets_to(CLIENT)
    assert packet == Error(ErrorCode.FILE_NOT_FOUND, "File not found")
    assert serial_server.stats['transfers_started'] == 0


def test_rrq_serves_file_in_blocks(serial_server, make_file):
    path = make_file(1024)
    respond(serial_server, Ack(1), Ack(2), Ack(3))
    serial_server.handle_request(ReadRequest(str(path)).to_bytes(), CLIENT)

    packets = serial_server.sock.packets_to(CLIENT)
    assert [(p.block, len(p.payload)) for p in packets] == [(1, 512), (2, 512), (3, 0)]
    assert serial_server.stats['transfers_completed'] == 1
    assert serial_server.stats['bytes_sent'] == 1024
    # The listening timeout is back in place once the transfer is over.
    assert serial_server.sock.timeout == DEFAULT_CONFIG['listen_timeout']


def test_wrq_receives_file(serial_server, tmp_path):
    target = tmp_path / "incoming.bin"
    respond(serial_server, Data(1, b"w" * 300))
    serial_server.handle_request(WriteRequest(str(target)).to_bytes(), CLIENT)

    assert serial_server.sock.packets_to(CLIENT) == [Ack(0), Ack(1)]
    assert target.read_bytes() == b"w" * 300
    assert serial_server.stats['files_received'] == 1


def test_wrq_truncates_existing_file(serial_server, tmp_path):
    target = tmp_path / "incoming.bin"
    target.write_bytes(b"old contents that are longer")
    respond(serial_server, Data(1, b"new"))
    serial_server.handle_request(WriteRequest(str(target)).to_bytes(), CLIENT)

    assert target.read_bytes() == b"new"


def test_wrq_into_missing_directory_is_refused(serial_server, tmp_path):
    target = tmp_path / "no" / "such" / "dir.bin"
    serial_server.handle_request(WriteRequest(str(target)).to_bytes(), CLIENT)

    [packet] = serial_server.sock.packets_to(CLIENT)
    assert isinstance(packet, Error)
    assert packet.code == ErrorCode.FILE_NOT_FOUND


def test_stranger_gets_unknown_tid_during_transfer(serial_server, make_file):
    path = make_file(10)
    serial_server.sock._responses.extend([
        (Ack(1).to_bytes(), OTHER),
        (Ack(1).to_bytes(), CLIENT),
    ])
    serial_server.handle_request(ReadRequest(str(path)).to_bytes(), CLIENT)

    assert serial_server.sock.packets_to(OTHER) == [Error(ErrorCode.UNKNOWN_TID, "Unknown transfer ID")]
    assert serial_server.sock.packets_to(CLIENT) == [Data(1, path.read_bytes())]


def test_timed_out_transfer_is_counted_as_failed(serial_server, make_file):
    path = make_file(10)
    serial_server.handle_request(ReadRequest(str(path)).to_bytes(), CLIENT)

    packets = serial_server.sock.packets_to(CLIENT)
    assert packets[:2] == [Data(1, path.read_bytes())] * 2
    assert isinstance(packets[-1], Error)
    assert serial_server.stats['transfers_failed'] == 1


def test_unsolicited_error_is_only_logged(serial_server, caplog):
    with caplog.at_level(logging.WARNING):
        serial_server.handle_request(Error(ErrorCode.ACCESS_VIOLATION, "go away").to_bytes(), CLIENT)
    assert serial_server.sock.sent == []
    assert "code 2: go away" in caplog.text


@pytest.mark.parametrize("packet", [Data(1, b"stray"), Ack(4)])
def test_data_or_ack_without_transfer_is_only_logged(serial_server, caplog, packet):
    with caplog.at_level(logging.WARNING):
        serial_server.handle_request(packet.to_bytes(), CLIENT)
    assert serial_server.sock.sent == []
    assert "Unexpected" in caplog.text
    assert serial_server.stats['unexpected_packets'] == 1


@pytest.mark.parametrize("raw", [b"\x00\x08whatever", b"\x00\x01unterminated", b"x"])
def test_malformed_request_is_only_logged(serial_server, raw):
    serial_server.handle_request(raw, CLIENT)
    assert serial_server.sock.sent == []
    assert serial_server.stats['malformed_packets'] == 1


class DummyTransfer:
    def __init__(self, sock, peer):
        self.channel = InboxChannel(sock, peer)
        self.peer = peer


def test_datagrams_are_routed_to_the_owning_transfer():
    server = TFTPServer(log_file=None)
    server.sock = MockSocket()
    transfer = DummyTransfer(server.sock, CLIENT)
    server.active_transfers[CLIENT] = transfer

    server.handle_datagram(Ack(1).to_bytes(), CLIENT)
    server.handle_datagram(Ack(9).to_bytes(), OTHER)

    assert transfer.channel.receive(0.1) == Ack(1).to_bytes()
    assert transfer.channel.inbox.empty()
    assert server.stats['unexpected_packets'] == 1


def test_busy_server_rejects_new_requests(make_file):
    server = TFTPServer(log_file=None, max_transfers=1)
    server.sock = MockSocket()
    server.active_transfers[OTHER] = DummyTransfer(server.sock, OTHER)
    path = make_file(10)

    server.handle_request(ReadRequest(str(path)).to_bytes(), CLIENT)

    assert server.sock.packets_to(CLIENT) == [Error(ErrorCode.NOT_DEFINED, "Server busy")]
    assert server.stats['transfers_rejected'] == 1


def test_config_file_and_overrides(tmp_path):
    config = tmp_path / "server.yaml"
    config.write_text("port: 6969\ntimeout: 2.5\nmax_retries: 8\nconcurrent: false\n")
    server = TFTPServer(str(config), max_retries=3, host=None)

    assert server.config['port'] == 6969
    assert server.config['timeout'] == 2.5
    assert server.config['max_retries'] == 3
    assert server.config['concurrent'] is False
    assert server.config['host'] == DEFAULT_CONFIG['host']


def test_empty_config_file_uses_defaults(tmp_path):
    config = tmp_path / "empty.yaml"
    config.write_text("")
    assert TFTPServer(str(config)).config == DEFAULT_CONFIG


@pytest.mark.parametrize("overrides", [
    {'timeout': 0},
    {'listen_timeout': -1},
    {'max_retries': -1},
    {'port': 70000},
    {'max_transfers': 0},
    {'blksize': 1024},
])
def test_invalid_config_is_rejected(overrides):
    with pytest.raises(ValueError):
        TFTPServer(**overrides)


def test_non_mapping_config_is_rejected(tmp_path):
    config = tmp_path / "list.yaml"
    config.write_text("- port\n- 69\n")
    with pytest.raises(ValueError):
        TFTPServer(str(config))


@pytest.mark.parametrize("overrides", [
    {'port': "69"},
    {'timeout': "5"},
    {'max_retries': 2.5},
    {'concurrent': "yes"},
    {'max_transfers': True},
    {'host': 127001},
])
def test_wrongly_typed_config_is_rejected(overrides):
    with pytest.raises(ValueError, match="wrong type"):
        TFTPServer(**overrides)


def test_wrongly_typed_config_file_is_rejected(tmp_path):
    config = tmp_path / "quoted.yaml"
    config.write_text('port: "69"\n')
    with pytest.raises(ValueError, match="port"):
        TFTPServer(str(config))


def test_new_request_during_serial_transfer_gets_server_busy(serial_server, make_file, tmp_path):
    path = make_file(10)
    serial_server.sock._responses.extend([
        (ReadRequest(str(tmp_path / "other.bin")).to_bytes(), OTHER),
        (WriteRequest("upload.bin").to_bytes(), OTHER),
        (Ack(1).to_bytes(), CLIENT),
    ])
    serial_server.handle_request(ReadRequest(str(path)).to_bytes(), CLIENT)

    assert serial_server.sock.packets_to(OTHER) == [Error(ErrorCode.NOT_DEFINED, "Server busy")] * 2
    assert serial_server.sock.packets_to(CLIENT) == [Data(1, path.read_bytes())]
    assert serial_server.stats['transfers_completed'] == 1


class FlakySocket(MockSocket):
    """recvfrom raises queued exceptions, and stops the server once drained."""

    def __init__(self, server, responses):
        super().__init__(responses)
        self.server = server

    def recvfrom(self, n):
        if not self._responses:
            self.server.stop()
            raise socket.timeout()
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_listener_survives_receive_errors(serial_server, caplog):
    sock = FlakySocket(serial_server, [
        ConnectionResetError(104, "Connection reset by peer"),
        (Ack(3).to_bytes(), CLIENT),
    ])
    serial_server.sock = sock
    serial_server.running = True

    with caplog.at_level(logging.ERROR):
        serial_server.start()

    assert "Receive failed" in caplog.text
    assert serial_server.stats['errors'] == 1
    # The datagram after the failure was still read and handled.
    assert serial_server.stats['unexpected_packets'] == 1
    assert sock.closed
