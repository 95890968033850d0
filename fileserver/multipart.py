"""
Streaming decoder for multipart/form-data request bodies.

Only a single boundary level is understood: a part whose own Content-Type is
multipart is handed over as opaque bytes.
"""

import logging
import re
from typing import BinaryIO, Dict, Iterator, Optional, Tuple

from .errors import MalformedRequest
from .request import CHUNK_SIZE, MAX_HEADERS, MAX_LINE_LENGTH, BodyReader

logger = logging.getLogger("fileserver.multipart")

MAX_BOUNDARY_LENGTH = 70
MAX_FIELD_SIZE = 1024 * 1024

_PARAM_PATTERN = re.compile(r';\s*([^\s;=]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^;]*)')


def parse_header_params(value: str) -> Tuple[str, Dict[str, str]]:
    """
    Split a header value such as ``form-data; name="a"; filename="b.txt"``.

    Returns:
        Tuple of the lower-cased main value and a dict of parameters with
        lower-cased keys and unquoted values
    """
    main, _, rest = value.partition(";")
    params: Dict[str, str] = {}
    for match in _PARAM_PATTERN.finditer(";" + rest):
        key = match.group(1).lower()
        param = match.group(2).strip()
        if len(param) >= 2 and param[0] == param[-1] == '"':
            param = re.sub(r'\\(.)', r'\1', param[1:-1])
        params[key] = param
    return main.strip().lower(), params


def boundary_from_content_type(content_type: str) -> bytes:
    """Extract the boundary token from a multipart Content-Type header value."""
    _, params = parse_header_params(content_type)
    boundary = params.get("boundary", "")
    if not boundary or len(boundary) > MAX_BOUNDARY_LENGTH:
        raise MalformedRequest("Bad Request: missing or invalid multipart boundary")
    return boundary.encode("iso-8859-1")


class MultipartPart:
    """
    One part of a multipart body.

    File parts stream their content and must be consumed before the decoder
    moves on (whatever is left is skipped). Field parts are buffered into
    ``value`` by the decoder.
    """

    def __init__(self, headers: Dict[str, str], stream: Iterator[bytes]):
        self.headers = headers
        _, params = parse_header_params(headers.get("content-disposition", ""))
        self.name: Optional[str] = params.get("name")
        self.filename: Optional[str] = params.get("filename")
        self.content_type = headers.get("content-type", "text/plain")
        self.value: Optional[bytes] = None
        self._stream = stream

    @property
    def is_file(self) -> bool:
        return self.filename is not None

    def iter_content(self) -> Iterator[bytes]:
        return self._stream

    def save(self, fileobj: BinaryIO) -> int:
        written = 0
        for chunk in self._stream:
            fileobj.write(chunk)
            written += len(chunk)
        return written

    def _drain(self) -> None:
        for _ in self._stream:
            pass


class MultipartDecoder:
    """
    Lazy iterator of MultipartPart over a request body.

    The decoder is single pass: parts come off the connection as they are
    requested and cannot be revisited.

    Args:
        body: Body reader positioned at the start of the multipart body
        boundary: Boundary token from the Content-Type header
    """

    def __init__(self, body: BodyReader, boundary: bytes, chunk_size: int = CHUNK_SIZE,
                 max_field_size: int = MAX_FIELD_SIZE):
        self._body = body
        self._delimiter = b"\r\n--" + boundary
        self._chunk_size = chunk_size
        self._max_field_size = max_field_size
        # The first boundary may sit on the very first line, with no CRLF before it
        self._buffer = b"\r\n"
        self._started = False
        self._finished = False
        self._current: Optional[MultipartPart] = None

    def __iter__(self) -> "MultipartDecoder":
        return self

    def __next__(self) -> MultipartPart:
        if self._current is not None:
            self._current._drain()
            self._current = None

        if not self._started:
            self._started = True
            self._skip_preamble()

        if self._finished:
            raise StopIteration

        headers = self._read_part_headers()
        part = MultipartPart(headers, self._stream_part_body())
        if part.is_file:
            self._current = part
        else:
            part.value = self._buffer_field(part)
        logger.debug(f"Multipart part name={part.name!r} filename={part.filename!r}")
        return part

    def _fill(self) -> bool:
        chunk = self._body.read(self._chunk_size)
        if not chunk:
            return False
        self._buffer += chunk
        return True

    def _skip_preamble(self) -> None:
        keep = len(self._delimiter) - 1
        while True:
            index = self._buffer.find(self._delimiter)
            if index >= 0:
                self._buffer = self._buffer[index + len(self._delimiter):]
                self._after_delimiter()
                return
            self._buffer = self._buffer[-keep:]
            if not self._fill():
                raise MalformedRequest("Bad Request: multipart boundary not found")

    def _after_delimiter(self) -> None:
        """Consume what follows a delimiter: ``--`` closes the body, else a line break."""
        while len(self._buffer) < 2:
            if not self._fill():
                raise MalformedRequest("Bad Request: unexpected end of multipart body")

        if self._buffer.startswith(b"--"):
            self._finished = True
            self._buffer = b""
            return

        # Transport padding is allowed between the boundary and its CRLF
        self._read_line()

    def _read_line(self) -> bytes:
        while True:
            index = self._buffer.find(b"\n")
            if index >= 0:
                line = self._buffer[:index]
                self._buffer = self._buffer[index + 1:]
                return line.rstrip(b"\r")
            if len(self._buffer) > MAX_LINE_LENGTH:
                raise MalformedRequest("Bad Request: multipart header line too long")
            if not self._fill():
                raise MalformedRequest("Bad Request: unexpected end of multipart body")

    def _read_part_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for _ in range(MAX_HEADERS + 1):
            line = self._read_line()
            if not line:
                return headers
            text = line.decode("utf-8", errors="replace")
            if ":" in text:
                key, value = text.split(":", 1)
                headers[key.strip().lower()] = value.strip()
        raise MalformedRequest("Bad Request: too many multipart part headers")

    def _stream_part_body(self) -> Iterator[bytes]:
        keep = len(self._delimiter) - 1
        while True:
            index = self._buffer.find(self._delimiter)
            if index >= 0:
                data = self._buffer[:index]
                self._buffer = self._buffer[index + len(self._delimiter):]
                if data:
                    yield data
                self._after_delimiter()
                return

            if len(self._buffer) > keep:
                data = self._buffer[:-keep]
                self._buffer = self._buffer[-keep:]
                yield data

            if not self._fill():
                raise MalformedRequest("Bad Request: unexpected end of multipart body")

    def _buffer_field(self, part: MultipartPart) -> bytes:
        chunks = []
        size = 0
        for chunk in part.iter_content():
            size += len(chunk)
            if size > self._max_field_size:
                raise MalformedRequest("Bad Request: form field too large")
            chunks.append(chunk)
        return b"".join(chunks)
