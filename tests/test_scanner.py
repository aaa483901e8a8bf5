import socket
import subprocess

import pytest

from gopose.errors import AppError, ErrorCode
from gopose.models import PortConfig, PortMapping, PortRange, Service
from gopose.scanner import NetstatPortDetector, PortAllocator, parse_netstat_output

BSD_OUTPUT = "\n".join(
    [
        "Active Internet connections (including servers)",
        "Proto Recv-Q Send-Q  Local Address          Foreign Address        (state)",
        "tcp46      0      0  *.8080                 *.*                    LISTEN",
        "tcp4       0      0  127.0.0.1.3333         *.*                    LISTEN",
        "tcp4       0      0  127.0.0.1.3333         *.*                    LISTEN",
        "tcp4       0      0  192.168.0.2.50000      10.0.0.1.443           ESTABLISHED",
        "udp4       0      0  *.5353                 *.*",
    ]
)


class FakeDetector:
    def __init__(self, used):
        self.used = list(used)

    def detect_used_ports(self):
        return sorted(self.used)

    def detect_used_ports_in_range(self, port_range):
        return [p for p in self.detect_used_ports() if port_range.start <= p <= port_range.end]


def test_parse_netstat_examples():
    assert parse_netstat_output(BSD_OUTPUT) == [3333, 8080]


def test_parse_netstat_ignores_linux_format():
    line = "tcp        0      0 0.0.0.0:22              0.0.0.0:*               LISTEN"
    assert parse_netstat_output(line) == []


def test_parse_netstat_empty():
    assert parse_netstat_output("") == []


def test_detect_used_ports_uses_runner():
    calls = []

    def runner(args):
        calls.append(list(args))
        return BSD_OUTPUT

    detector = NetstatPortDetector(runner=runner)
    assert detector.detect_used_ports() == [3333, 8080]
    assert calls == [["netstat", "-an"]]


def test_detect_used_ports_in_range():
    detector = NetstatPortDetector(runner=lambda args: BSD_OUTPUT)
    assert detector.detect_used_ports_in_range(PortRange(start=8000, end=9999)) == [8080]


def test_detect_used_ports_failure():
    def runner(args):
        raise subprocess.CalledProcessError(1, args)

    detector = NetstatPortDetector(runner=runner)
    with pytest.raises(AppError) as info:
        detector.detect_used_ports()
    assert info.value.code is ErrorCode.PORT_SCAN_FAILED


def test_is_port_in_use_with_listener():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    try:
        port = server.getsockname()[1]
        assert NetstatPortDetector().is_port_in_use(port) is True
    finally:
        server.close()


def test_allocate_port_skips_used_and_reserved():
    allocator = PortAllocator(FakeDetector([8000]))
    config = PortConfig(range=PortRange(start=8000, end=8010), reserved=[8001])
    assert allocator.allocate_port(config) == 8002


def test_allocate_port_excludes_privileged():
    allocator = PortAllocator(FakeDetector([]))
    config = PortConfig(range=PortRange(start=1000, end=1100), exclude_privileged=True)
    assert allocator.allocate_port(config) == 1024


def test_allocate_port_none_free():
    allocator = PortAllocator(FakeDetector([8000, 8001]))
    config = PortConfig(range=PortRange(start=8000, end=8001))
    with pytest.raises(AppError) as info:
        allocator.allocate_port(config)
    assert info.value.code is ErrorCode.PORT_UNAVAILABLE


def test_allocate_ports_distinct_and_free():
    used = [8001, 8003]
    allocator = PortAllocator(FakeDetector(used))
    config = PortConfig(range=PortRange(start=8000, end=8010), reserved=[8004])
    ports = allocator.allocate_ports(3, config)
    assert len(ports) == 3
    assert len(set(ports)) == 3
    assert not set(ports) & {8001, 8003, 8004}
    assert ports == sorted(ports)


def test_allocate_ports_zero():
    allocator = PortAllocator(FakeDetector([]))
    assert allocator.allocate_ports(0, PortConfig(range=PortRange(start=8000, end=8010))) == []


def test_allocate_ports_shortfall():
    allocator = PortAllocator(FakeDetector([8001]))
    config = PortConfig(range=PortRange(start=8000, end=8002))
    with pytest.raises(AppError) as info:
        allocator.allocate_ports(5, config)
    assert info.value.code is ErrorCode.PORT_UNAVAILABLE
    assert info.value.fields["allocated_ports"] == [8000, 8002]


def test_allocate_ports_for_services():
    allocator = PortAllocator(FakeDetector([8000]))
    services = [
        Service(name="web", ports=[PortMapping(host=80, container=80)]),
        Service(name="worker"),
        Service(name="db", ports=[PortMapping(host=5432, container=5432)]),
    ]
    config = PortConfig(range=PortRange(start=8000, end=8010))
    result = allocator.allocate_ports_for_services(services, config)
    assert set(result) == {"web", "db"}
    assert 8000 not in result.values()
    assert len(set(result.values())) == 2


def test_allocate_ports_for_services_without_ports():
    allocator = PortAllocator(FakeDetector([]))
    config = PortConfig(range=PortRange(start=8000, end=8010))
    assert allocator.allocate_ports_for_services([Service(name="a")], config) == {}


def test_allocate_ports_for_services_exhausted():
    allocator = PortAllocator(FakeDetector([]))
    services = [
        Service(name="a", ports=[PortMapping(host=1, container=1)]),
        Service(name="b", ports=[PortMapping(host=2, container=2)]),
    ]
    config = PortConfig(range=PortRange(start=8000, end=8000))
    with pytest.raises(AppError) as info:
        allocator.allocate_ports_for_services(services, config)
    assert info.value.fields["allocations"] == {"a": 8000}