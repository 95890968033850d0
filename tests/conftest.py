import threading

import pytest

from fileserver import HTTPServer
from helpers import INDEX_HTML, PHOTO_JPG


@pytest.fixture
def docroot(tmp_path):
    root = tmp_path / "www"
    root.mkdir()
    (root / "index.html").write_bytes(INDEX_HTML)
    (root / "notes.txt").write_bytes(b"plain text notes\n")
    (root / "photo.jpg").write_bytes(PHOTO_JPG)
    (root / "data.json").write_bytes(b'{"answer": 42}')
    (root / "archive.tar").write_bytes(b"\x00" * 100)
    (root / "sub").mkdir()
    (root / "sub" / "page.html").write_bytes(b"<p>sub page</p>")
    (tmp_path / "secret.txt").write_bytes(b"outside the document root")
    return root


def _start(docroot, max_threads):
    server = HTTPServer(port=0, max_threads=max_threads, document_root=str(docroot), log_file=None)
    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()
    assert server.ready.wait(timeout=5), "server did not start listening"
    return server, thread


@pytest.fixture
def server(docroot):
    server, thread = _start(docroot, max_threads=4)
    yield server
    server.stop(timeout=5)
    thread.join(timeout=5)


@pytest.fixture
def single_worker_server(docroot):
    server, thread = _start(docroot, max_threads=1)
    yield server
    server.stop(timeout=5)
    thread.join(timeout=5)
