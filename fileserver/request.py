"""
Request parsing for the file server.

The request line, the header block and the body are all read from one
buffered binary stream (the socket's ``makefile('rb')``), so the header/body
boundary is found correctly however the client's bytes were split across TCP
segments.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterator, Optional, Tuple
from urllib.parse import unquote

from .errors import MalformedRequest

logger = logging.getLogger("fileserver.request")

MAX_LINE_LENGTH = 65536
MAX_HEADERS = 100
MAX_BUFFERED_BODY = 1024 * 1024
CHUNK_SIZE = 64 * 1024
DEFAULT_VERSION = "HTTP/1.0"
INDEX_FILE = "index.html"


class BodyReader:
    """
    Capped view of the request body.

    Exposes exactly ``content_length`` bytes of the underlying stream, or none
    at all when the length is unknown (-1). Reads never go past the declared
    length, and a client that disconnects early simply produces a short read.
    """

    def __init__(self, rfile: BinaryIO, content_length: int):
        self._rfile = rfile
        self.content_length = content_length
        self.remaining = max(content_length, 0)
        self.bytes_read = 0
        self._eof = False

    @property
    def exhausted(self) -> bool:
        return self._eof or self.remaining == 0

    def read(self, size: int = -1) -> bytes:
        """
        Read up to ``size`` bytes of body, or everything left when size < 0.

        With a non-negative size at most one read is issued on the stream, so
        the call returns as soon as some data is available.
        """
        if self.exhausted or size == 0:
            return b""

        if size < 0:
            data = self._rfile.read(self.remaining)
        else:
            data = self._rfile.read1(min(size, self.remaining))

        if not data:
            self._eof = True
            return b""

        self.remaining -= len(data)
        self.bytes_read += len(data)
        if size < 0 and self.remaining:
            # read() only returns short at EOF
            self._eof = True
        return data

    def read_all(self, limit: int = MAX_BUFFERED_BODY) -> bytes:
        """Buffer the whole body in memory; refuse bodies larger than ``limit``."""
        if self.remaining > limit:
            raise MalformedRequest(f"Bad Request: body of {self.remaining} bytes is too large")
        return self.read()

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        while True:
            chunk = self.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def copy_to(self, fileobj: BinaryIO, chunk_size: int = CHUNK_SIZE) -> int:
        """
        Copy the remaining body into ``fileobj`` without buffering it whole.

        Returns:
            Number of bytes written
        """
        written = 0
        for chunk in self.iter_chunks(chunk_size):
            fileobj.write(chunk)
            written += len(chunk)
        return written


@dataclass
class Request:
    method: str
    target: str
    version: str
    headers: Dict[str, str] = field(default_factory=dict)
    content_length: int = -1
    body: Optional[BodyReader] = None

    def get_header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    @property
    def content_type(self) -> str:
        """Media type of the body without parameters, lower-cased."""
        return self.get_header("content-type").split(";", 1)[0].strip().lower()


def _read_line(rfile: BinaryIO) -> Tuple[bytes, bool]:
    """Read one CRLF or LF terminated line; returns (line, at_eof)."""
    raw = rfile.readline(MAX_LINE_LENGTH + 1)
    if len(raw) > MAX_LINE_LENGTH:
        raise MalformedRequest("Bad Request: line too long")
    return raw.rstrip(b"\r\n"), raw == b""


def parse_content_length(value: Optional[str]) -> int:
    """Parse a Content-Length value; anything but a non-negative integer gives -1."""
    if value is None:
        return -1
    value = value.strip()
    if not (value.isascii() and value.isdigit()):
        return -1
    return int(value)


def parse_headers(rfile: BinaryIO) -> Dict[str, str]:
    """
    Read header lines up to the blank separator line.

    Keys are lower-cased, values trimmed, and a repeated header keeps its last
    value. Lines without a colon are skipped.
    """
    headers: Dict[str, str] = {}
    count = 0
    while True:
        line, at_eof = _read_line(rfile)
        if not line:
            if at_eof:
                logger.debug("Stream ended inside header block")
            return headers

        count += 1
        if count > MAX_HEADERS:
            raise MalformedRequest("Bad Request: too many headers")

        text = line.decode("iso-8859-1")
        if ":" not in text:
            logger.debug(f"Ignoring header line without colon: {text!r}")
            continue

        key, value = text.split(":", 1)
        key = key.strip().lower()
        if key:
            headers[key] = value.strip()


def parse_request(rfile: BinaryIO) -> Request:
    """
    Parse a request off a binary stream positioned at the start of a connection.

    Args:
        rfile: Buffered binary stream supporting readline, read and read1

    Returns:
        Parsed Request whose body reader is bound to the same stream

    Raises:
        MalformedRequest: Unparseable request line or oversized header block
    """
    line, _ = _read_line(rfile)
    request_line = line.decode("iso-8859-1")
    if not request_line:
        raise MalformedRequest("Bad Request: empty request line")

    tokens = request_line.split(" ", 2)
    if len(tokens) < 2:
        raise MalformedRequest("Bad Request: malformed request line")

    method, target = tokens[0], tokens[1]
    version = tokens[2] if len(tokens) == 3 else DEFAULT_VERSION
    if not method or not target:
        raise MalformedRequest("Bad Request: malformed request line")

    headers = parse_headers(rfile)
    content_length = parse_content_length(headers.get("content-length"))
    if "content-length" in headers and content_length < 0:
        logger.warning(f"Ignoring invalid Content-Length: {headers['content-length']!r}")

    return Request(
        method=method,
        target=target,
        version=version,
        headers=headers,
        content_length=content_length,
        body=BodyReader(rfile, content_length),
    )


def resolve_path(document_root: str, path: str) -> str:
    """
    Resolve a decoded request path to an absolute file path under the root.

    ``/`` and any path ending in ``/`` map to that directory's index.html.

    Raises:
        MalformedRequest: The path contains a NUL byte or escapes the root
    """
    if "\x00" in path:
        raise MalformedRequest("Bad Request: invalid path")

    if path == "" or path.endswith("/"):
        path += INDEX_FILE

    root = os.path.realpath(document_root)
    candidate = os.path.realpath(os.path.join(root, path.lstrip("/")))
    if os.path.commonpath([root, candidate]) != root:
        logger.warning(f"Path escapes document root: {path}")
        raise MalformedRequest("Bad Request: path outside document root")

    return candidate


def resolve_target(document_root: str, target: str) -> str:
    """Resolve a raw request target, dropping any query string and decoding %-escapes."""
    path = target.split("?", 1)[0].split("#", 1)[0]
    return resolve_path(document_root, unquote(path))
