"""clamd INSTREAM client against an in-process fake daemon."""
import struct
import threading

import pytest

from config.settings import Settings
from models.schemas import ScanOutcome, ScanStatus
from services.clam_av import ClamAVService, NoopScanner, build_antivirus_scanner, encode_instream


def test_encode_instream_frames_are_big_endian_length_prefixed():
    frames = list(encode_instream(b"abcdefghij", 4))
    assert frames == [
        b"\x00\x00\x00\x04abcd",
        b"\x00\x00\x00\x04efgh",
        b"\x00\x00\x00\x02ij",
        b"\x00\x00\x00\x00",
    ]


def test_encode_instream_empty_payload_is_only_terminator():
    assert list(encode_instream(b"", 8192)) == [b"\x00\x00\x00\x00"]


def test_encode_instream_rejects_bad_chunk_size():
    with pytest.raises(ValueError):
        list(encode_instream(b"abc", 0))


def test_scan_sends_exact_wire_format(fake_clamd):
    client = ClamAVService("127.0.0.1", fake_clamd.port, connect_timeout=2.0, read_timeout=2.0, chunk_size=3)
    payload = b"1234567"

    outcome = client.scan(payload)

    assert outcome == ScanOutcome.clean()
    received = fake_clamd.received[0]
    assert received["command"] == b"zINSTREAM\0"
    assert received["frames"] == [b"123", b"456", b"7"]
    assert received["raw"] == (
        b"zINSTREAM\0"
        + struct.pack(">I", 3) + b"123"
        + struct.pack(">I", 3) + b"456"
        + struct.pack(">I", 1) + b"7"
        + struct.pack(">I", 0)
    )


def test_large_payload_split_into_default_chunks(clamav_client, fake_clamd):
    payload = bytes(range(256)) * 100  # 25600 bytes

    clamav_client.scan(payload)

    frames = fake_clamd.received[0]["frames"]
    assert [len(frame) for frame in frames] == [8192, 8192, 8192, 1024]
    assert b"".join(frames) == payload


def test_infected_response(clamav_client, fake_clamd):
    fake_clamd.respond_with(b"stream: Eicar-Test-Signature FOUND\0")
    outcome = clamav_client.scan(ClamAVService.EICAR_TEST)
    assert outcome.status == ScanStatus.INFECTED
    assert outcome.signature_name == "Eicar-Test-Signature"


def test_unrecognized_response_is_skipped(clamav_client, fake_clamd):
    fake_clamd.respond_with(b"INSTREAM size limit exceeded. ERROR\0")
    outcome = clamav_client.scan(b"data")
    assert outcome == ScanOutcome.skipped("unrecognized response")


def test_unreachable_daemon_is_skipped(closed_port):
    client = ClamAVService("127.0.0.1", closed_port, connect_timeout=1.0)
    assert client.scan(b"data") == ScanOutcome.skipped("unavailable")


def test_hung_daemon_times_out(fake_clamd):
    fake_clamd.hang.set()
    client = ClamAVService("127.0.0.1", fake_clamd.port, connect_timeout=1.0, read_timeout=0.2)
    assert client.scan(b"data") == ScanOutcome.skipped("timeout")


def test_cancelled_scan_is_skipped(clamav_client):
    cancel = threading.Event()
    cancel.set()
    assert clamav_client.scan(b"data", cancel_event=cancel) == ScanOutcome.skipped("cancelled")


@pytest.mark.parametrize(
    "response,expected",
    [
        ("stream: OK", ScanOutcome.clean()),
        ("...stream: OK", ScanOutcome.clean()),
        ("stream: Win.Trojan.Agent-123 FOUND", ScanOutcome.infected("Win.Trojan.Agent-123")),
        ("stream: Heur.OK.Dropper FOUND", ScanOutcome.infected("Heur.OK.Dropper")),
        ("", ScanOutcome.skipped("unrecognized response")),
        ("UNKNOWN COMMAND", ScanOutcome.skipped("unrecognized response")),
    ],
)
def test_parse_response(response, expected):
    assert ClamAVService.parse_response(response) == expected


def test_response_trailing_terminators_are_stripped(clamav_client, fake_clamd):
    fake_clamd.respond_with(b"stream: Some.Sig FOUND \r\n\0\0")
    assert clamav_client.scan(b"x").signature_name == "Some.Sig"


def test_ping_and_version(clamav_client):
    assert clamav_client.ping() is True
    version = clamav_client.get_version()
    assert version["available"] is True
    assert version["version"].startswith("ClamAV")


def test_ping_unreachable(closed_port):
    client = ClamAVService("127.0.0.1", closed_port, connect_timeout=1.0)
    assert client.ping() is False
    assert client.get_version()["available"] is False


def test_health_check_requires_eicar_detection(clamav_client, fake_clamd):
    fake_clamd.respond_with(b"stream: Eicar-Test-Signature FOUND\0")
    report = clamav_client.health_check()
    assert report["healthy"] is True
    assert report["checks"]["test_scan"]["detected_eicar"] is True

    fake_clamd.respond_with(b"stream: OK\0")
    assert clamav_client.health_check()["healthy"] is False


def test_health_check_unreachable(closed_port):
    report = ClamAVService("127.0.0.1", closed_port, connect_timeout=1.0).health_check()
    assert report["healthy"] is False
    assert report["checks"]["daemon"]["available"] is False


def test_noop_scanner():
    assert NoopScanner().scan(b"data") == ScanOutcome.skipped("disabled")


def test_build_antivirus_scanner_from_settings():
    assert isinstance(build_antivirus_scanner(Settings(CLAMAV_ENABLED=False)), NoopScanner)
    scanner = build_antivirus_scanner(Settings(CLAMAV_HOST="clamd", CLAMAV_PORT=3311, CLAMAV_CHUNK_SIZE=4096))
    assert isinstance(scanner, ClamAVService)
    assert (scanner.daemon_host, scanner.daemon_port, scanner.chunk_size) == ("clamd", 3311, 4096)


def test_invalid_chunk_size():
    with pytest.raises(ValueError):
        ClamAVService(chunk_size=0)
