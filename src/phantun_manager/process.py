"""Process management for Phantun binaries."""

import codecs
import signal
import subprocess
import threading
from datetime import datetime
from typing import IO

from .common.exceptions import ProcessError
from .common.logging import get_logger
from .config import BaseInstanceConfig, ClientConfig
from .logs import LogBroadcastHub, LogStream

logger = get_logger(__name__)

# Upper bound on one published output record
READ_CHUNK_SIZE = 4096


def format_endpoint(host: str, port: int) -> str:
    """Join host and port, bracketing IPv6 literals."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def build_arguments(spec: BaseInstanceConfig) -> list[str]:
    """Build the command line flags for a Phantun client or server.

    Clients bind ``host:port`` locally; servers take a bare port.
    """
    if isinstance(spec, ClientConfig):
        local = format_endpoint(spec.local_addr, spec.local_port)
    else:
        local = str(spec.local_port)

    args = ["--local", local]
    args += ["--remote", format_endpoint(spec.remote_addr, spec.remote_port)]
    args += ["--tun-local", spec.tun_local, "--tun-peer", spec.tun_peer]
    if spec.tun_name:
        args += ["--tun", spec.tun_name]

    if spec.ipv4_only:
        args.append("--ipv4-only")
    else:
        if spec.tun_local_ipv6:
            args += ["--tun-local6", spec.tun_local_ipv6]
        if spec.tun_peer_ipv6:
            args += ["--tun-peer6", spec.tun_peer_ipv6]

    if spec.handshake_file:
        args += ["--handshake-packet", spec.handshake_file]
    return args


class TunnelProcess:
    """One Phantun child process with its output forwarded to the log hub."""

    def __init__(self, spec: BaseInstanceConfig, binary_path: str, hub: LogBroadcastHub):
        """Initialize TunnelProcess.

        Args:
            spec: Instance configuration, with tunnel addressing resolved
            binary_path: Path to phantun_client or phantun_server
            hub: Hub receiving every line the process writes
        """
        self.spec = spec
        self.binary_path = binary_path
        self.hub = hub
        self.started_at: datetime | None = None
        self._process: subprocess.Popen[bytes] | None = None
        self._readers: list[threading.Thread] = []

    @property
    def command(self) -> list[str]:
        return [self.binary_path, *build_arguments(self.spec)]

    def start(self) -> int:
        """Spawn the process and attach the output readers.

        Returns:
            Process ID

        Raises:
            ProcessError: If the process cannot be started
        """
        command = self.command
        logger.debug("Spawning tunnel process", command=" ".join(command))
        try:
            self._process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise ProcessError(f"Failed to start {self.binary_path}: {e}") from e

        self.started_at = datetime.now()
        self._readers = [
            self._attach_reader(self._process.stdout, LogStream.STDOUT),
            self._attach_reader(self._process.stderr, LogStream.STDERR),
        ]
        return self._process.pid

    def _attach_reader(self, pipe: IO[bytes] | None, stream: LogStream) -> threading.Thread:
        thread = threading.Thread(
            target=self._forward_output,
            args=(pipe, stream),
            name=f"phantun-{stream.value}-{self.spec.id[:8]}",
            daemon=True,
        )
        thread.start()
        return thread

    def _forward_output(self, pipe: IO[bytes] | None, stream: LogStream) -> None:
        # Ends when the pipe closes, i.e. when the process exits.
        if pipe is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            # read1 returns whatever is available, so output without a
            # trailing newline is published instead of buffered.
            for chunk in iter(lambda: pipe.read1(READ_CHUNK_SIZE), b""):
                text = decoder.decode(chunk)
                if text:
                    self.hub.publish_output(self.spec.id, stream, text)
            tail = decoder.decode(b"", final=True)
            if tail:
                self.hub.publish_output(self.spec.id, stream, tail)
        except (OSError, ValueError) as e:
            logger.debug("Output reader stopped", stream=stream.value, error=str(e))
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def terminate(self) -> None:
        """Send SIGTERM without waiting for the process to exit."""
        if not self.is_running() or self._process is None:
            return
        try:
            self._process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Process already gone", pid=self._process.pid)

    def is_running(self) -> bool:
        if self._process is None:
            return False
        return self._process.poll() is None

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for exit; returns the exit code or None on timeout."""
        if self._process is None:
            return None
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def join_readers(self, timeout: float | None = None) -> None:
        for thread in self._readers:
            thread.join(timeout)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None
