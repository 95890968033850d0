"""
Response framing: status line, header block and body.

The head is written in one go and is immutable afterwards. Content-Length is
always present and set before the first body byte goes out.
"""

import html
from datetime import datetime, timezone
from typing import BinaryIO, Dict, Optional

from .errors import IOFailure

HTTP_VERSION = "HTTP/1.1"
SERVER_NAME = "fileserver/1.0"
CHUNK_SIZE = 64 * 1024

STATUS_TEXTS = {
    200: "OK",
    201: "Created",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    415: "Unsupported Media Type",
    500: "Internal Server Error",
}


def http_date(timestamp: Optional[float] = None) -> str:
    """Format a POSIX timestamp (default: now) as an RFC 9110 HTTP-date."""
    if timestamp is None:
        moment = datetime.now(timezone.utc)
    else:
        moment = datetime.fromtimestamp(timestamp, timezone.utc)
    return moment.strftime('%a, %d %b %Y %H:%M:%S GMT')


def error_body(message: str) -> bytes:
    return f"<html><body><h1>{html.escape(message)}</h1></body></html>".encode("utf-8")


class ResponseWriter:
    """
    Writes one HTTP response onto a binary stream.

    Args:
        wfile: Writable binary stream, normally the socket's makefile('wb')
    """

    def __init__(self, wfile: BinaryIO):
        self._wfile = wfile
        self.head_sent = False
        self.status_code: Optional[int] = None
        self.body_bytes = 0

    def send_head(self, status_code: int, headers: Dict[str, str]) -> None:
        if self.head_sent:
            raise RuntimeError("Response head already sent")

        status_text = STATUS_TEXTS.get(status_code, "Unknown")
        lines = [f"{HTTP_VERSION} {status_code} {status_text}"]
        for key, value in headers.items():
            lines.append(f"{key}: {value}")

        head = "\r\n".join(lines) + "\r\n\r\n"
        self._wfile.write(head.encode("utf-8"))
        self.head_sent = True
        self.status_code = status_code

    def send_header(self, status_code: int, content_type: str, content_length: int,
                    headers: Optional[Dict[str, str]] = None) -> None:
        """
        Send the status line and headers of a response.

        Args:
            status_code: HTTP status code
            content_type: Value of the Content-Type header
            content_length: Exact number of body bytes that will follow
            headers: Extra headers, written after the standard ones
        """
        all_headers = {
            "Content-Type": content_type,
            "Content-Length": str(content_length),
            "Date": http_date(),
            "Server": SERVER_NAME,
            "Connection": "close",
        }
        if headers:
            all_headers.update(headers)
        self.send_head(status_code, all_headers)

    def send_error(self, status_code: int, message: str, include_body: bool = True) -> None:
        """
        Send an HTML error response.

        Content-Length always matches the bytes actually written, so it is 0
        when the body is left out.
        """
        body = error_body(message) if include_body else b""
        self.send_header(status_code, "text/html", len(body))
        if body:
            self.send_body(body)

    def send_body(self, data: bytes) -> None:
        self._wfile.write(data)
        self.body_bytes += len(data)

    def send_file(self, fileobj: BinaryIO, length: int, chunk_size: int = CHUNK_SIZE) -> None:
        """Stream exactly ``length`` bytes of an open file after the head."""
        remaining = length
        while remaining > 0:
            chunk = fileobj.read(min(chunk_size, remaining))
            if not chunk:
                raise IOFailure(f"File ended {remaining} bytes short of its Content-Length")
            self.send_body(chunk)
            remaining -= len(chunk)

    def flush(self) -> None:
        self._wfile.flush()
