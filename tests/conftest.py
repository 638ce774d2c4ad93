"""Pytest fixtures: sample file bytes, a fake clamd daemon, recording audit sink, workflow factory."""
import socket
import socketserver
import struct
import threading
import zlib

import pytest

from models.schemas import ScanOutcome
from services.clam_av import ClamAVService
from services.mime_sniffing import MimeSniffingService
from workflows.upload_validation import UploadValidationWorkflow


def _png_chunk(chunk_type: bytes, data: bytes) -> bytes:
    crc = zlib.crc32(chunk_type + data) & 0xFFFFFFFF
    return struct.pack(">I", len(data)) + chunk_type + data + struct.pack(">I", crc)


PNG_BYTES = (
    b"\x89PNG\r\n\x1a\n"
    + _png_chunk(b"IHDR", struct.pack(">IIBBBBB", 1, 1, 8, 2, 0, 0, 0))
    + _png_chunk(b"IDAT", zlib.compress(b"\x00\xff\x00\x00"))
    + _png_chunk(b"IEND", b"")
)
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00" + b"\x00" * 64 + b"\xff\xd9"
WEBP_BYTES = b"RIFF" + struct.pack("<I", 30) + b"WEBPVP8 " + struct.pack("<I", 18) + b"\x00" * 18
WAV_BYTES = (
    b"RIFF" + struct.pack("<I", 36) + b"WAVE"
    + b"fmt " + struct.pack("<IHHIIHH", 16, 1, 1, 8000, 8000, 1, 8)
    + b"data" + struct.pack("<I", 0)
)
PDF_BYTES = (
    b"%PDF-1.4\n"
    b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
    b"2 0 obj\n<< /Type /Pages /Kids [] /Count 0 >>\nendobj\n"
    b"trailer\n<< /Root 1 0 R >>\n%%EOF\n"
)


def heif_bytes(brand: bytes) -> bytes:
    """ISOBMFF file whose ftyp box carries `brand` as the major brand."""
    ftyp = struct.pack(">I", 24) + b"ftyp" + brand + b"\x00\x00\x00\x00" + brand + b"miaf"
    meta = struct.pack(">I", 16) + b"meta" + b"\x00" * 8
    return ftyp + meta


@pytest.fixture
def png_bytes():
    return PNG_BYTES


@pytest.fixture
def jpeg_bytes():
    return JPEG_BYTES


@pytest.fixture
def webp_bytes():
    return WEBP_BYTES


@pytest.fixture
def wav_bytes():
    return WAV_BYTES


@pytest.fixture
def pdf_bytes():
    return PDF_BYTES


@pytest.fixture
def heif_sample():
    return heif_bytes


class _ClamdHandler(socketserver.BaseRequestHandler):
    def handle(self):
        server = self.server
        raw = bytearray()
        try:
            command = self._read_command(raw)
            frames = []
            if command == b"zINSTREAM\0":
                while True:
                    length = struct.unpack(">I", self._recv_exact(4, raw))[0]
                    if length == 0:
                        break
                    frames.append(self._recv_exact(length, raw))
        except ConnectionError:
            server.received.append({"command": None, "frames": [], "raw": bytes(raw), "aborted": True})
            return

        server.received.append({"command": command, "frames": frames, "raw": bytes(raw), "aborted": False})
        if server.hang.is_set():
            server.release.wait(5)
            return
        self.request.sendall(server.replies.get(command, b"UNKNOWN COMMAND\0"))

    def _read_command(self, raw):
        command = bytearray()
        while not command.endswith(b"\0"):
            command += self._recv_exact(1, raw)
        return bytes(command)

    def _recv_exact(self, size, raw):
        data = bytearray()
        while len(data) < size:
            chunk = self.request.recv(size - len(data))
            if not chunk:
                raise ConnectionError("client closed the connection")
            data += chunk
        raw += data
        return bytes(data)


class FakeClamd(socketserver.ThreadingTCPServer):
    """In-process clamd stand-in: records what it receives and replies with a canned answer."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self):
        super().__init__(("127.0.0.1", 0), _ClamdHandler)
        self.received = []
        self.hang = threading.Event()
        self.release = threading.Event()
        self.replies = {
            b"zINSTREAM\0": b"stream: OK\0",
            b"zPING\0": b"PONG\0",
            b"zVERSION\0": b"ClamAV 1.2.1/27100/Mon Oct 19 08:00:00 2026\0",
        }

    @property
    def port(self):
        return self.server_address[1]

    def respond_with(self, response: bytes):
        self.replies[b"zINSTREAM\0"] = response


@pytest.fixture
def fake_clamd():
    server = FakeClamd()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.release.set()
        server.shutdown()
        server.server_close()


@pytest.fixture
def closed_port():
    """A localhost port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def clamav_client(fake_clamd):
    return ClamAVService(
        daemon_host="127.0.0.1",
        daemon_port=fake_clamd.port,
        connect_timeout=2.0,
        read_timeout=2.0,
        chunk_size=8192,
    )


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    @property
    def stages(self):
        return [event["stage"] for event in self.events]


class StubScanner:
    def __init__(self, outcome=None):
        self.outcome = outcome or ScanOutcome.clean()
        self.calls = []

    def scan(self, file_data, cancel_event=None):
        self.calls.append(file_data)
        return self.outcome


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def stub_scanner():
    return StubScanner()


@pytest.fixture
def make_workflow(audit_sink, stub_scanner):
    def _make(**overrides):
        kwargs = {
            "mime_sniffer": MimeSniffingService(use_magic=False),
            "antivirus": stub_scanner,
            "audit_sink": audit_sink,
            "fail_closed": False,
        }
        kwargs.update(overrides)
        return UploadValidationWorkflow(**kwargs)

    return _make
