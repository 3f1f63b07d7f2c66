#!/usr/bin/env python3
"""
TFTP Server

Serves read (RRQ) and write (WRQ) requests over UDP following RFC 1350
with the fixed 512-byte block size. Each block is acknowledged before the
next one moves, lost packets are retransmitted after a timeout, and a
transfer that stays silent for too many retries is aborted with an ERROR
packet to the client.

Key design choices and assumptions:
1. **Single Port**: Every packet of every transfer is received and sent on
   the listening port. Transfers are identified by the client's host/port
   pair (its TID), so several clients can be served at once and one client
   host can run several transfers from different ports.
2. **One Thread per Transfer**: The listening loop never blocks on a
   transfer. It routes datagrams from a known client address to that
   transfer's inbox and treats everything else as a new request. With
   `concurrent: false` the server instead runs one transfer to completion
   before listening again.
3. **Bounded Retries**: Every wait for an ACK or DATA is bounded by
   `timeout`; after `max_retries` retransmissions the transfer is dropped.
4. **Paths Taken Verbatim**: The filename in the request is opened as is.
   There is no sandboxing and no authentication.

Usage examples:
# Terminal 1: Start the server
python3 tftp_server.py --config tftp_server_config.yaml

# Terminal 2: Fetch and store files
python3 tftp_client.py get notes.txt
python3 tftp_client.py put large_file.pdf
"""
import logging
import signal
import socket
import sys
import threading
from collections import defaultdict
from logging.handlers import RotatingFileHandler

import yaml

from tftp_packet import (RECV_BUFFER_SIZE, Error, ErrorCode, MalformedPacket, ReadRequest,
                         WriteRequest, decode)
from tftp_transfer import (DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT, FileOpenFailure, ReadTransfer,
                           WriteTransfer)
from tftp_transport import InboxChannel, SocketChannel

DEFAULT_CONFIG = {
    'host': '0.0.0.0',
    'port': 69,
    'timeout': DEFAULT_TIMEOUT,
    'max_retries': DEFAULT_MAX_RETRIES,
    'listen_timeout': 1.0,
    'concurrent': True,
    'max_transfers': 10,
    'log_file': 'tftp_server.log',
    'log_level': 'INFO',
    'log_max_bytes': 10 * 1024 * 1024,
    'log_backup_count': 5,
}


def validate_config(config):
    unknown = set(config) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    for key, types in (('port', int), ('max_retries', int), ('max_transfers', int),
                       ('log_max_bytes', int), ('log_backup_count', int),
                       ('timeout', (int, float)), ('listen_timeout', (int, float)),
                       ('concurrent', bool), ('host', str)):
        value = config[key]
        if not isinstance(value, types) or (types is not bool and isinstance(value, bool)):
            raise ValueError(f"{key} has the wrong type: {value!r}")
    if not 0 <= config['port'] <= 65535:
        raise ValueError(f"port must be between 0 and 65535, got {config['port']}")
    for key in ('timeout', 'listen_timeout'):
        if config[key] <= 0:
            raise ValueError(f"{key} must be positive, got {config[key]}")
    if config['max_retries'] < 0:
        raise ValueError(f"max_retries must not be negative, got {config['max_retries']}")
    if config['max_transfers'] < 1:
        raise ValueError(f"max_transfers must be at least 1, got {config['max_transfers']}")


class TFTPServer:
    def __init__(self, config_file=None, **overrides):
        # Defaults, then the YAML file, then explicit overrides (CLI flags, tests).
        self.config = dict(DEFAULT_CONFIG)
        if config_file:
            with open(config_file, 'r') as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"{config_file}: expected a mapping at the top level")
            self.config.update(loaded)
        self.config.update({k: v for k, v in overrides.items() if v is not None})
        validate_config(self.config)

        self.logger = logging.getLogger(__name__)
        self.sock = None
        # In-flight transfers keyed by client (host, port). Only used in concurrent mode.
        self.active_transfers = {}
        self.workers = {}
        self.transfer_lock = threading.Lock()
        self.running = False
        self.stats = defaultdict(int)

    def setup_logging(self):
        # Console output plus a rotating log file.
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        handlers = [logging.StreamHandler()]
        if self.config['log_file']:
            handlers.append(RotatingFileHandler(self.config['log_file'],
                                                maxBytes=self.config['log_max_bytes'],
                                                backupCount=self.config['log_backup_count']))
        for handler in handlers:
            handler.setFormatter(formatter)
        logging.basicConfig(level=self.config['log_level'], handlers=handlers)
        return self.logger

    @property
    def server_address(self):
        return self.sock.getsockname() if self.sock else None

    def bind(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.config['host'], self.config['port']))
        except OSError:
            sock.close()
            raise
        # Expiry is not an error: the loop just checks `running` and listens again.
        sock.settimeout(self.config['listen_timeout'])
        self.sock = sock
        self.running = True
        return self.server_address

    def start(self):
        if self.sock is None:
            self.bind()
        host, port = self.server_address
        self.logger.info(f"TFTP server listening on {host}:{port} "
                         f"({'concurrent' if self.config['concurrent'] else 'serial'} mode, "
                         f"timeout {self.config['timeout']}s, {self.config['max_retries']} retries)")
        try:
            while self.running:
                try:
                    data, addr = self.sock.recvfrom(RECV_BUFFER_SIZE)
                except socket.timeout:
                    continue
                except OSError as e:
                    self.logger.error(f"Receive failed: {e}")
                    self.stats['errors'] += 1
                    continue
                try:
                    self.handle_datagram(data, addr)
                except Exception as e:
                    self.logger.exception(f"Error handling datagram from {addr}: {e}")
                    self.stats['errors'] += 1
        finally:
            self.running = False
            self.shutdown()

    def stop(self):
        self.running = False

    def shutdown(self):
        with self.transfer_lock:
            workers = list(self.workers.values())
        if workers:
            self.logger.info(f"Waiting for {len(workers)} active transfer(s)")
        for thread in workers:
            thread.join(timeout=self.config['timeout'])
        self.print_stats()
        if self.sock is not None:
            self.sock.close()
            self.sock = None
        self.logger.info("Server stopped")

    def handle_datagram(self, data, addr):
        # A datagram from a client with a transfer in flight belongs to that transfer.
        with self.transfer_lock:
            transfer = self.active_transfers.get(addr)
        if transfer is not None:
            transfer.channel.put(data)
            return
        self.handle_request(data, addr)

    def handle_request(self, data, addr):
        client = f"{addr[0]}:{addr[1]}"
        try:
            packet = decode(data)
        except MalformedPacket as e:
            self.logger.warning(f"Malformed request from {client}: {e}")
            self.stats['malformed_packets'] += 1
            return

        self.logger.debug(f"Opcode {packet.opcode.name} from {client}")
        if isinstance(packet, (ReadRequest, WriteRequest)):
            self.start_transfer(packet, addr)
        elif isinstance(packet, Error):
            self.logger.warning(f"ERROR from {client} - code {packet.code}: {packet.message}")
        else:
            self.logger.warning(f"Unexpected {packet.opcode.name} from {client} with no active transfer")
            self.stats['unexpected_packets'] += 1

    def open_file(self, request):
        mode = 'rb' if isinstance(request, ReadRequest) else 'wb'
        try:
            return open(request.filename, mode)
        except FileNotFoundError:
            raise FileOpenFailure("File not found", code=ErrorCode.FILE_NOT_FOUND) from None
        except PermissionError:
            raise FileOpenFailure("Access violation", code=ErrorCode.ACCESS_VIOLATION) from None
        except OSError as e:
            raise FileOpenFailure(f"Failed to open file: {e.strerror or e}") from None

    def send_error(self, addr, code, message):
        try:
            self.sock.sendto(Error(code, message).to_bytes(), addr)
        except OSError as e:
            self.logger.error(f"Sending ERROR to {addr} failed: {e}")

    def start_transfer(self, request, addr):
        client = f"{addr[0]}:{addr[1]}"
        concurrent = self.config['concurrent']
        self.logger.info(f"{request.opcode.name} from {client} - File: {request.filename} (mode: {request.mode})")

        if concurrent:
            with self.transfer_lock:
                busy = len(self.active_transfers) >= self.config['max_transfers']
            if busy:
                self.logger.warning(f"Max transfers reached. Rejecting {request.opcode.name} from {client}")
                self.stats['transfers_rejected'] += 1
                self.send_error(addr, ErrorCode.NOT_DEFINED, "Server busy")
                return

        try:
            file_handle = self.open_file(request)
        except FileOpenFailure as e:
            self.logger.error(f"Cannot open {request.filename} for {client}: {e}")
            self.stats['errors'] += 1
            self.send_error(addr, e.code, str(e))
            return

        if concurrent:
            channel = InboxChannel(self.sock, addr)
        else:
            channel = SocketChannel(self.sock, addr, self.logger)
        transfer_class = ReadTransfer if isinstance(request, ReadRequest) else WriteTransfer
        transfer = transfer_class(channel, file_handle, request.filename,
                                  timeout=self.config['timeout'],
                                  max_retries=self.config['max_retries'],
                                  logger=self.logger)
        with self.transfer_lock:
            self.stats['transfers_started'] += 1

        if not concurrent:
            try:
                self.run_transfer(transfer)
            finally:
                self.sock.settimeout(self.config['listen_timeout'])
            return

        thread = threading.Thread(target=self.run_transfer, args=(transfer,),
                                  name=f"tftp-{client}", daemon=True)
        with self.transfer_lock:
            self.active_transfers[addr] = transfer
            self.workers[addr] = thread
        thread.start()

    def run_transfer(self, transfer):
        try:
            transfer.run()
        except Exception as e:
            self.logger.exception(f"Transfer of {transfer.filename} with {transfer.peer_name} crashed: {e}")
            transfer.close()
        finally:
            self.finish_transfer(transfer)

    def finish_transfer(self, transfer):
        with self.transfer_lock:
            if self.active_transfers.get(transfer.peer) is transfer:
                del self.active_transfers[transfer.peer]
                self.workers.pop(transfer.peer, None)
            if transfer.completed:
                self.stats['transfers_completed'] += 1
                if transfer.direction == 'read':
                    self.stats['files_sent'] += 1
                    self.stats['bytes_sent'] += transfer.bytes_transferred
                else:
                    self.stats['files_received'] += 1
                    self.stats['bytes_received'] += transfer.bytes_transferred
            else:
                self.stats['transfers_failed'] += 1
            self.stats['retransmits'] += transfer.retransmits
            self.stats['ack_errors'] += transfer.ack_errors
            self.stats['duplicate_blocks'] += transfer.duplicate_blocks

    def print_stats(self):
        print("\n" + "=" * 70)
        print("TFTP SERVER STATISTICS")
        print("=" * 70)
        print(f"Files sent:          {self.stats['files_sent']}")
        print(f"Bytes sent:          {self.stats['bytes_sent']:,}")
        print(f"Files received:      {self.stats['files_received']}")
        print(f"Bytes received:      {self.stats['bytes_received']:,}")
        print(f"Transfers completed: {self.stats['transfers_completed']}")
        print(f"Transfers failed:    {self.stats['transfers_failed']}")
        print(f"Retransmissions:     {self.stats['retransmits']}")
        print(f"ACK block errors:    {self.stats['ack_errors']}")
        print(f"Duplicate blocks:    {self.stats['duplicate_blocks']}")
        print(f"Errors:              {self.stats['errors']}")
        print("=" * 70)


def main():
    import argparse
    parser = argparse.ArgumentParser(description='TFTP server (RFC 1350, 512-byte blocks)')
    parser.add_argument('--config', help='YAML config file')
    parser.add_argument('--host', help='Listen address (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, help='Listen port (default: 69)')
    parser.add_argument('--timeout', type=float, help='Seconds to wait for each ACK/DATA (default: 5)')
    parser.add_argument('--retries', dest='max_retries', type=int, help='Retransmissions before giving up')
    parser.add_argument('--serial', action='store_true', help='Serve one transfer at a time')
    args = parser.parse_args()

    overrides = {'host': args.host, 'port': args.port, 'timeout': args.timeout,
                 'max_retries': args.max_retries}
    if args.serial:
        overrides['concurrent'] = False
    try:
        server = TFTPServer(args.config, **overrides)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: invalid configuration: {e}")
        sys.exit(1)
    server.setup_logging()

    try:
        server.bind()
    except PermissionError:
        print(f"Error: Permission denied to bind to port {server.config['port']}")
        print("Try running with sudo or use a port > 1024")
        sys.exit(1)
    except OSError as e:
        print(f"Error: cannot bind {server.config['host']}:{server.config['port']}: {e}")
        sys.exit(1)

    signal.signal(signal.SIGTERM, lambda signum, frame: server.stop())
    try:
        server.start()
    except KeyboardInterrupt:
        server.running = False


if __name__ == '__main__':
    main()
