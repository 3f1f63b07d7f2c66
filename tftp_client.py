#!/usr/bin/env python3
"""
TFTP Client

Fetches (`get`) and stores (`put`) files on a TFTP server using the same
lock-step transfer engine as the server: every DATA block waits for its
ACK, lost packets are retransmitted after a timeout, and the transfer is
abandoned after too many retries. An ERROR packet from the server ends the
transfer immediately.

The server answers from its listening port, so the client only accepts
packets from (server_host, server_port).

Usage examples:
python3 tftp_client.py get notes.txt --server 192.168.1.10
python3 tftp_client.py put large_file.pdf backup.pdf --port 6969
"""
import logging
import socket
import sys
import time
from pathlib import Path

from tftp_packet import ReadRequest, WriteRequest
from tftp_transfer import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT, ReadTransfer, WriteTransfer
from tftp_transport import SocketChannel


class TFTPClient:
    def __init__(self, server_host='127.0.0.1', server_port=69, timeout=DEFAULT_TIMEOUT,
                 max_retries=DEFAULT_MAX_RETRIES):
        self.server_host = server_host
        self.server_port = server_port
        self.timeout = timeout
        self.max_retries = max_retries
        self.stats = {'files_sent': 0, 'files_received': 0, 'bytes_sent': 0,
                      'bytes_received': 0, 'retransmits': 0, 'errors': 0}
        self.logger = logging.getLogger(__name__)
        self.last_error = None

    def _run(self, transfer_class, request, file_handle, name):
        # Replies come from the server's IP, compare against that rather than a hostname.
        server_addr = (socket.gethostbyname(self.server_host), self.server_port)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            channel = SocketChannel(sock, server_addr, self.logger)
            transfer = transfer_class(channel, file_handle, name, timeout=self.timeout,
                                      max_retries=self.max_retries, logger=self.logger,
                                      abort_on_peer_error=True)
            success = transfer.run(request.to_bytes())
        finally:
            sock.close()
        self.stats['retransmits'] += transfer.retransmits
        self.last_error = transfer.error
        if not success:
            self.stats['errors'] += 1
        return success, transfer

    def send_file(self, local_filepath, remote_filename=None):
        local_path = Path(local_filepath)
        remote_filename = remote_filename or local_path.name
        try:
            f = open(local_path, 'rb')
        except OSError as e:
            self.logger.error(f"Cannot open {local_filepath}: {e}")
            self.stats['errors'] += 1
            return False

        print(f"Sending: {local_filepath} → {remote_filename}")
        start = time.time()
        try:
            success, transfer = self._run(ReadTransfer, WriteRequest(remote_filename), f, remote_filename)
        except socket.gaierror as e:
            f.close()
            self.logger.error(f"Cannot resolve {self.server_host}: {e}")
            self.stats['errors'] += 1
            return False
        if success:
            self.stats['files_sent'] += 1
            self.stats['bytes_sent'] += transfer.bytes_transferred
            elapsed = time.time() - start
            rate = transfer.bytes_transferred / elapsed if elapsed > 0 else 0
            print(f"Sent {transfer.bytes_transferred:,}B in {elapsed:.2f}s → {rate:,.0f} B/s")
        return success

    def receive_file(self, remote_filename, local_filepath=None):
        local_path = Path(local_filepath or Path(remote_filename).name)
        try:
            f = open(local_path, 'wb')
        except OSError as e:
            self.logger.error(f"Cannot create {local_path}: {e}")
            self.stats['errors'] += 1
            return False

        print(f"Receiving: {remote_filename} → {local_path}")
        start = time.time()
        try:
            success, transfer = self._run(WriteTransfer, ReadRequest(remote_filename), f, remote_filename)
        except socket.gaierror as e:
            f.close()
            self.logger.error(f"Cannot resolve {self.server_host}: {e}")
            self.stats['errors'] += 1
            success = False
        if not success:
            # Never leave a truncated copy behind.
            local_path.unlink(missing_ok=True)
            return False
        self.stats['files_received'] += 1
        self.stats['bytes_received'] += transfer.bytes_transferred
        elapsed = time.time() - start
        rate = transfer.bytes_transferred / elapsed if elapsed > 0 else 0
        print(f"Received {transfer.bytes_transferred:,}B in {elapsed:.2f}s → {rate:,.0f} B/s")
        return True


def main():
    import argparse
    parser = argparse.ArgumentParser(description='TFTP client')
    parser.add_argument('--server', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=69)
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT)
    parser.add_argument('--retries', type=int, default=DEFAULT_MAX_RETRIES)
    parser.add_argument('--verbose', '-v', action='store_true')
    sub = parser.add_subparsers(dest='command', required=True)
    get = sub.add_parser('get', help='Download a file from the server')
    get.add_argument('remote', help='File name on the server')
    get.add_argument('local', nargs='?', help='Local path (default: basename of remote)')
    put = sub.add_parser('put', help='Upload a file to the server')
    put.add_argument('local', help='File to send')
    put.add_argument('remote', nargs='?', help='File name on the server (default: basename of local)')
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler()])
    client = TFTPClient(args.server, args.port, timeout=args.timeout, max_retries=args.retries)
    if args.command == 'get':
        success = client.receive_file(args.remote, args.local)
    else:
        success = client.send_file(args.local, args.remote)
    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
