"""Detection of listening ports and allocation of free ones."""

from __future__ import annotations

import re
import socket
import subprocess
from collections.abc import Callable, Iterable, Sequence
from typing import Protocol

from .errors import AppError, ErrorCode
from .logger import Logger, NopLogger
from .models import PortConfig, PortRange, Service

Runner = Callable[[Sequence[str]], str]

# Matches BSD/macOS netstat lines such as
#   tcp46      0      0  *.8080                 *.*                    LISTEN
#   tcp4       0      0  127.0.0.1.3333         *.*                    LISTEN
_NETSTAT_RE = re.compile(
    r"(?:tcp|udp)\S*\s+\d+\s+\d+\s+(?:\*|\d+\.\d+\.\d+\.\d+)\.(\d+)\s+.*LISTEN",
    re.ASCII,
)

_PRIVILEGED_PORTS = range(1, 1024)
_CHECK_TIMEOUT = 0.1


def _run_command(args: Sequence[str]) -> str:
    completed = subprocess.run(list(args), capture_output=True, check=True, text=True)
    return completed.stdout


def parse_netstat_output(output: str) -> list[int]:
    """Listening ports found in netstat output, sorted and without duplicates."""
    ports: set[int] = set()
    for line in output.split("\n"):
        if "LISTEN" not in line:
            continue
        match = _NETSTAT_RE.search(line)
        if match is not None:
            ports.add(int(match.group(1)))
    return sorted(ports)


class PortDetector(Protocol):
    """Anything that can report the ports in use."""

    def detect_used_ports(self) -> list[int]: ...

    def detect_used_ports_in_range(self, port_range: PortRange) -> list[int]: ...


class NetstatPortDetector:
    """Finds listening ports by running netstat."""

    def __init__(self, logger: Logger | None = None, runner: Runner | None = None) -> None:
        self.logger = logger if logger is not None else NopLogger()
        self.runner = runner if runner is not None else _run_command

    def detect_used_ports(self) -> list[int]:
        """All listening ports on the system, sorted."""
        self.logger.debug("netstatを使用してポートスキャンを開始")
        try:
            output = self.runner(["netstat", "-an"])
        except (OSError, subprocess.SubprocessError) as exc:
            raise AppError(
                ErrorCode.PORT_SCAN_FAILED,
                "netstatコマンドの実行に失敗しました",
                cause=exc,
            ) from exc

        ports = parse_netstat_output(output)
        self.logger.info("ポートスキャン完了", found_ports_count=len(ports))
        return ports

    def detect_used_ports_in_range(self, port_range: PortRange) -> list[int]:
        """Listening ports inside the inclusive range."""
        ports = [
            port
            for port in self.detect_used_ports()
            if port_range.start <= port <= port_range.end
        ]
        self.logger.debug(
            "範囲内ポートフィルタリング完了",
            range_start=port_range.start,
            range_end=port_range.end,
            filtered_count=len(ports),
        )
        return ports

    def is_port_in_use(self, port: int) -> bool:
        """Whether a TCP or UDP connection to localhost on the port can be made."""
        for kind in (socket.SOCK_STREAM, socket.SOCK_DGRAM):
            try:
                with socket.create_connection(("localhost", port), timeout=_CHECK_TIMEOUT) \
                        if kind == socket.SOCK_STREAM else _udp_connect(port):
                    return True
            except OSError:
                continue
        return False


def _udp_connect(port: int) -> socket.socket:
    last_error: OSError | None = None
    for family, kind, proto, _, address in socket.getaddrinfo(
        "localhost", port, type=socket.SOCK_DGRAM
    ):
        sock = socket.socket(family, kind, proto)
        try:
            sock.settimeout(_CHECK_TIMEOUT)
            sock.connect(address)
            return sock
        except OSError as exc:
            sock.close()
            last_error = exc
    raise last_error if last_error is not None else OSError("no address for localhost")


class PortAllocator:
    """Picks free ports from a configured range."""

    def __init__(self, detector: PortDetector, logger: Logger | None = None) -> None:
        self.detector = detector
        self.logger = logger if logger is not None else NopLogger()

    def _excluded(self, config: PortConfig) -> set[int]:
        excluded = set(self.detector.detect_used_ports_in_range(config.range))
        excluded.update(config.reserved)
        if config.exclude_privileged:
            excluded.update(_PRIVILEGED_PORTS)
        return excluded

    def _free_ports(self, config: PortConfig, excluded: set[int]) -> Iterable[int]:
        return (
            port
            for port in range(config.range.start, config.range.end + 1)
            if port not in excluded
        )

    def allocate_port(self, config: PortConfig) -> int:
        """The lowest free port in the range."""
        excluded = self._excluded(config)
        port = next(iter(self._free_ports(config, excluded)), None)
        if port is None:
            raise AppError(
                ErrorCode.PORT_UNAVAILABLE,
                "指定された範囲に利用可能なポートがありません",
                fields={"range_start": config.range.start, "range_end": config.range.end},
            )
        self.logger.debug("ポート割り当て成功", allocated_port=port)
        return port

    def allocate_ports(self, count: int, config: PortConfig) -> list[int]:
        """The lowest count free ports in the range."""
        if count <= 0:
            return []
        excluded = self._excluded(config)
        allocated: list[int] = []
        for port in self._free_ports(config, excluded):
            if len(allocated) >= count:
                break
            allocated.append(port)

        if len(allocated) < count:
            raise AppError(
                ErrorCode.PORT_UNAVAILABLE,
                "要求された数のポートを割り当てできません。"
                f"要求: {count}, 割り当て可能: {len(allocated)}",
                fields={
                    "requested_count": count,
                    "allocated_count": len(allocated),
                    "allocated_ports": allocated,
                    "range_start": config.range.start,
                    "range_end": config.range.end,
                },
            )

        self.logger.info("複数ポート割り当て完了", allocated_count=len(allocated), ports=allocated)
        return allocated

    def allocate_ports_for_services(
        self, services: Sequence[Service], config: PortConfig
    ) -> dict[str, int]:
        """One free port for each service that has port mappings."""
        needing = [service for service in services if service.ports]
        if not needing:
            return {}

        excluded = self._excluded(config)
        free = iter(self._free_ports(config, excluded))
        result: dict[str, int] = {}
        for service in needing:
            port = next(free, None)
            if port is None:
                raise AppError(
                    ErrorCode.PORT_ALLOCATION_FAILED,
                    f"サービス {service.name} のポート割り当てに失敗: 利用可能なポートがありません",
                    fields={"service": service.name, "allocations": dict(result)},
                )
            result[service.name] = port

        self.logger.info(
            "サービス別ポート割り当て完了", service_count=len(result), allocations=result
        )
        return result