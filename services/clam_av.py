import re
import socket
import struct
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Protocol

from config.settings import Settings, settings
from models.schemas import ScanOutcome, ScanStatus
from utils.logger import get_logger

logger = get_logger(__name__)


class AntivirusScanner(Protocol):
    """Anything that can scan a byte buffer and report a ``ScanOutcome``."""

    def scan(self, file_data: bytes, cancel_event: Optional[threading.Event] = None) -> ScanOutcome:
        ...


class NoopScanner:
    """Scanner used when antivirus scanning is switched off."""

    REASON = "disabled"

    def scan(self, file_data: bytes, cancel_event: Optional[threading.Event] = None) -> ScanOutcome:
        logger.debug("Antivirus scanning disabled | Size: %s bytes", len(file_data))
        return ScanOutcome.skipped(self.REASON)


def encode_instream(file_data: bytes, chunk_size: int) -> Iterator[bytes]:
    """
    Yield the INSTREAM body: ``uint32_be(len) + payload`` per chunk, then a
    zero-length terminator frame.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be > 0, got {chunk_size}")

    view = memoryview(file_data)
    for offset in range(0, len(view), chunk_size):
        chunk = view[offset:offset + chunk_size]
        yield struct.pack(">I", len(chunk)) + chunk.tobytes()
    yield struct.pack(">I", 0)


class ClamAVService:
    """
    Client for the clamd TCP protocol (null-terminated ``z`` commands).

    Every failure mode of the daemon (refused connection, timeout, reset,
    unparseable reply) degrades to ``ScanOutcome.skipped``; only a
    ``stream: <name> FOUND`` reply yields ``infected``.
    """

    INSTREAM_COMMAND = b"zINSTREAM\0"
    PING_COMMAND = b"zPING\0"
    VERSION_COMMAND = b"zVERSION\0"

    FOUND_PATTERN = re.compile(r"stream: (.+) FOUND")
    RESPONSE_STRIP_CHARS = "\0\r\n "
    RECV_SIZE = 4096

    EICAR_TEST = b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"

    def __init__(
        self,
        daemon_host: str = "localhost",
        daemon_port: int = 3310,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        chunk_size: int = 8192,
    ):
        """
        Args:
            daemon_host: clamd host
            daemon_port: clamd TCP port
            connect_timeout: Seconds allowed to establish the connection
            read_timeout: Seconds allowed per send/receive once connected
            chunk_size: Payload bytes per INSTREAM frame
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be > 0, got {chunk_size}")

        self.daemon_host = daemon_host
        self.daemon_port = daemon_port
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.chunk_size = chunk_size

    def scan(self, file_data: bytes, cancel_event: Optional[threading.Event] = None) -> ScanOutcome:
        """Stream ``file_data`` to clamd with INSTREAM and classify the reply."""
        try:
            sock = socket.create_connection(
                (self.daemon_host, self.daemon_port),
                timeout=self.connect_timeout,
            )
        except OSError as e:
            logger.warning(
                "ClamAV daemon not reachable at %s:%s: %s",
                self.daemon_host,
                self.daemon_port,
                e,
            )
            return ScanOutcome.skipped("unavailable")

        with sock:
            sock.settimeout(self.read_timeout)
            try:
                sock.sendall(self.INSTREAM_COMMAND)
                for frame in encode_instream(file_data, self.chunk_size):
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info("ClamAV scan cancelled by caller | Size: %s bytes", len(file_data))
                        return ScanOutcome.skipped("cancelled")
                    sock.sendall(frame)
                response = self._read_response(sock)
            except socket.timeout:
                logger.warning("ClamAV scan timed out after %ss", self.read_timeout)
                return ScanOutcome.skipped("timeout")
            except OSError as e:
                logger.warning("ClamAV connection error during scan: %s", e)
                return ScanOutcome.skipped("unavailable")

        outcome = self.parse_response(response)
        if outcome.status == ScanStatus.INFECTED:
            logger.warning("THREAT DETECTED | Threat: %s | Size: %s bytes", outcome.signature_name, len(file_data))
        elif outcome.status == ScanStatus.SKIPPED:
            logger.warning("Unrecognized ClamAV response | Length: %s", len(response))
            logger.debug("Raw ClamAV response: %r", response)
        else:
            logger.info("Scan completed | Status: %s | Size: %s bytes", outcome.status.value, len(file_data))
        return outcome

    def _read_response(self, sock: socket.socket) -> str:
        """Read until the daemon closes the connection, then trim terminators."""
        chunks = []
        while True:
            data = sock.recv(self.RECV_SIZE)
            if not data:
                break
            chunks.append(data)
        return b"".join(chunks).decode("ascii", errors="replace").strip(self.RESPONSE_STRIP_CHARS)

    @classmethod
    def parse_response(cls, response: str) -> ScanOutcome:
        """
        clamd replies:
            stream: OK
            stream: Eicar-Test-Signature FOUND
            INSTREAM size limit exceeded. ERROR

        FOUND is checked first so a signature name containing "OK" is not
        read as clean.
        """
        match = cls.FOUND_PATTERN.search(response)
        if match:
            return ScanOutcome.infected(match.group(1))
        if "OK" in response:
            return ScanOutcome.clean()
        return ScanOutcome.skipped("unrecognized response")

    def _command(self, command: bytes) -> str:
        with socket.create_connection(
            (self.daemon_host, self.daemon_port),
            timeout=self.connect_timeout,
        ) as sock:
            sock.settimeout(self.read_timeout)
            sock.sendall(command)
            return self._read_response(sock)

    def ping(self) -> bool:
        """True when clamd answers PONG."""
        try:
            return self._command(self.PING_COMMAND) == "PONG"
        except OSError as e:
            logger.warning("ClamAV ping failed at %s:%s: %s", self.daemon_host, self.daemon_port, e)
            return False

    def get_version(self) -> Dict[str, Any]:
        """Get ClamAV engine and signature database version"""
        try:
            version = self._command(self.VERSION_COMMAND)
        except OSError as e:
            logger.error("Failed to get ClamAV version: %s", e)
            return {"available": False, "error": str(e)}
        return {"available": True, "version": version}

    def health_check(self) -> Dict[str, Any]:
        """
        Ping, version and an EICAR test scan.

        Healthy only when the daemon answers and flags the EICAR test string.
        """
        health: Dict[str, Any] = {
            "service": "clamav",
            "healthy": False,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {},
        }

        reachable = self.ping()
        health["checks"]["daemon"] = {
            "available": reachable,
            "host": self.daemon_host,
            "port": self.daemon_port,
        }
        if not reachable:
            logger.info("ClamAV health check: UNHEALTHY (daemon unreachable)")
            return health

        version = self.get_version()
        health["checks"]["version"] = version

        test_result = self.scan(self.EICAR_TEST)
        health["checks"]["test_scan"] = {
            "executed": test_result.status != ScanStatus.SKIPPED,
            "detected_eicar": test_result.status == ScanStatus.INFECTED,
        }

        health["healthy"] = version.get("available", False) and test_result.status == ScanStatus.INFECTED
        logger.info("ClamAV health check: %s", "HEALTHY" if health["healthy"] else "UNHEALTHY")
        return health


def build_antivirus_scanner(config: Settings = settings) -> AntivirusScanner:
    if not config.CLAMAV_ENABLED:
        return NoopScanner()
    return ClamAVService(
        daemon_host=config.CLAMAV_HOST,
        daemon_port=config.CLAMAV_PORT,
        connect_timeout=config.CLAMAV_CONNECT_TIMEOUT,
        read_timeout=config.CLAMAV_READ_TIMEOUT,
        chunk_size=config.CLAMAV_CHUNK_SIZE,
    )
