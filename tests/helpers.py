"""Shared helpers for talking raw HTTP to the server under test."""

import io
import socket
from typing import Dict, List, Tuple

INDEX_HTML = b"<html><body><h1>Welcome</h1></body></html>\n"
PHOTO_JPG = bytes(range(256)) * 4


def parse_response(raw: bytes) -> Tuple[int, Dict[str, str], bytes]:
    head, _, body = raw.partition(b"\r\n\r\n")
    lines = head.decode("iso-8859-1").split("\r\n")
    status = int(lines[0].split(" ", 2)[1])
    headers = {}
    for line in lines[1:]:
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    return status, headers, body


def recv_all(sock: socket.socket) -> bytes:
    chunks = []
    while True:
        data = sock.recv(65536)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


def send_raw(port: int, payload: bytes, host: str = "127.0.0.1", timeout: float = 5.0) -> bytes:
    with socket.create_connection((host, port), timeout=timeout) as client:
        client.sendall(payload)
        return recv_all(client)


def request(port: int, payload: bytes) -> Tuple[int, Dict[str, str], bytes]:
    return parse_response(send_raw(port, payload))


class ChunkedRaw(io.RawIOBase):
    """Raw stream that hands out data in the given pieces, like separate recv() calls."""

    def __init__(self, chunks: List[bytes]):
        self._chunks = list(chunks)

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if not self._chunks:
            return 0
        chunk = self._chunks.pop(0)
        size = min(len(buffer), len(chunk))
        buffer[:size] = chunk[:size]
        if size < len(chunk):
            self._chunks.insert(0, chunk[size:])
        return size


def chunked_stream(chunks: List[bytes]) -> io.BufferedReader:
    return io.BufferedReader(ChunkedRaw(chunks))
