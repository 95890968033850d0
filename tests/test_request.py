import io
import os

import pytest

from fileserver.errors import MalformedRequest
from fileserver.request import (MAX_LINE_LENGTH, BodyReader, parse_content_length, parse_request,
                                resolve_target)
from helpers import chunked_stream


def test_parse_request_line_and_headers():
    rfile = io.BytesIO(
        b"GET /index.html HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"User-Agent:   curl/8.0  \r\n"
        b"\r\n"
    )
    request = parse_request(rfile)

    assert request.method == "GET"
    assert request.target == "/index.html"
    assert request.version == "HTTP/1.1"
    assert request.headers == {"host": "localhost:8080", "user-agent": "curl/8.0"}
    assert request.content_length == -1
    assert request.body.read() == b""


def test_duplicate_header_last_one_wins():
    request = parse_request(io.BytesIO(b"GET / HTTP/1.1\r\nX-Tag: one\r\nx-tag: two\r\n\r\n"))
    assert request.get_header("X-Tag") == "two"


def test_header_lines_without_colon_are_ignored():
    request = parse_request(io.BytesIO(b"GET / HTTP/1.1\r\ngarbage line\r\nHost: a\r\n\r\n"))
    assert request.headers == {"host": "a"}


def test_bare_lf_line_endings_are_accepted():
    request = parse_request(io.BytesIO(b"HEAD /notes.txt HTTP/1.0\nHost: a\n\n"))
    assert request.method == "HEAD"
    assert request.headers == {"host": "a"}


def test_missing_version_defaults():
    request = parse_request(io.BytesIO(b"GET /\r\n\r\n"))
    assert request.target == "/"
    assert request.version == "HTTP/1.0"


@pytest.mark.parametrize("raw", [
    b"",
    b"\r\n",
    b"GET\r\n\r\n",
    b" /index.html HTTP/1.1\r\n\r\n",
    b"GET  HTTP/1.1\r\n\r\n",
])
def test_malformed_request_line(raw):
    with pytest.raises(MalformedRequest) as excinfo:
        parse_request(io.BytesIO(raw))
    assert excinfo.value.status_code == 400


def test_overlong_header_line_is_rejected():
    raw = b"GET / HTTP/1.1\r\nX-Big: " + b"a" * MAX_LINE_LENGTH + b"\r\n\r\n"
    with pytest.raises(MalformedRequest):
        parse_request(io.BytesIO(raw))


@pytest.mark.parametrize("value, expected", [
    (None, -1),
    ("12", 12),
    (" 0 ", 0),
    ("abc", -1),
    ("-5", -1),
    ("1.5", -1),
])
def test_parse_content_length(value, expected):
    assert parse_content_length(value) == expected


def test_non_numeric_content_length_means_no_body():
    rfile = io.BytesIO(b"PUT /a HTTP/1.1\r\nContent-Length: lots\r\n\r\nhello")
    request = parse_request(rfile)
    assert request.content_length == -1
    assert request.body.read() == b""


def test_body_in_same_chunk_as_headers_is_capped():
    rfile = io.BytesIO(b"PUT /a HTTP/1.1\r\nContent-Length: 5\r\n\r\nhelloEXTRA")
    request = parse_request(rfile)

    assert request.body.read() == b"hello"
    assert request.body.read() == b""
    assert rfile.read() == b"EXTRA"


def test_header_boundary_split_across_reads():
    rfile = chunked_stream([
        b"POST /up HT",
        b"TP/1.1\r\nContent-Le",
        b"ngth: 11\r",
        b"\n\r",
        b"\nhello",
        b" world",
    ])
    request = parse_request(rfile)

    assert request.headers == {"content-length": "11"}
    assert request.body.read_all() == b"hello world"


def test_body_reader_read_respects_size_and_limit():
    body = BodyReader(io.BytesIO(b"abcdefgh"), 4)
    assert body.read(3) == b"abc"
    assert body.read(3) == b"d"
    assert body.read(3) == b""
    assert body.exhausted
    assert body.bytes_read == 4


def test_body_reader_short_body_ends_at_eof():
    body = BodyReader(chunked_stream([b"ab", b"c"]), 10)
    assert body.read() == b"abc"
    assert body.exhausted
    assert body.read(5) == b""


def test_body_reader_unknown_length_reads_nothing():
    body = BodyReader(io.BytesIO(b"data"), -1)
    assert body.exhausted
    assert body.read() == b""


def test_body_reader_copy_to_streams_in_chunks():
    payload = os.urandom(10000)
    body = BodyReader(chunked_stream([payload[:3000], payload[3000:]] + [b"tail"]), len(payload))
    out = io.BytesIO()

    assert body.copy_to(out, chunk_size=1024) == len(payload)
    assert out.getvalue() == payload


def test_body_reader_read_all_refuses_large_bodies():
    body = BodyReader(io.BytesIO(b"x" * 100), 100)
    with pytest.raises(MalformedRequest):
        body.read_all(limit=10)


@pytest.fixture
def root(tmp_path):
    return os.path.realpath(tmp_path)


@pytest.mark.parametrize("target, relative", [
    ("/", "index.html"),
    ("/notes.txt", "notes.txt"),
    ("/sub/", os.path.join("sub", "index.html")),
    ("/sub/page.html?v=2#top", os.path.join("sub", "page.html")),
    ("/my%20file.txt", "my file.txt"),
    ("/sub/../index.html", "index.html"),
])
def test_resolve_target_inside_root(root, target, relative):
    assert resolve_target(root, target) == os.path.join(root, relative)


@pytest.mark.parametrize("target", [
    "/../secret.txt",
    "/sub/../../secret.txt",
    "/%2e%2e/secret.txt",
    "/bad%00name",
])
def test_resolve_target_rejects_escapes(root, target):
    with pytest.raises(MalformedRequest):
        resolve_target(os.path.join(root, "www"), target)
