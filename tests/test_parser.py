import io
import logging
import os
import textwrap

import pytest

from gopose.errors import AppError, ErrorCode
from gopose.logger import Logger
from gopose.models import PortMapping, ServiceNetwork
from gopose.parser import ComposeFileDetector, ComposeParser


def write(tmp_path, text, name="docker-compose.yml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return str(path)


@pytest.fixture
def parser():
    return ComposeParser()


def test_parses_port_forms(tmp_path, parser):
    path = write(
        tmp_path,
        """
        version: "3.8"
        services:
          web:
            image: nginx
            ports:
              - "8080:80"
              - "127.0.0.1:5432:5432/udp"
              - 3000
              - "90"
              - target: 443
                published: "8443"
                protocol: tcp
                host_ip: 0.0.0.0
        """,
    )
    config = parser.parse_compose_file(path)
    assert config.version == "3.8"
    assert config.file_path == path
    web = config.services["web"]
    assert web.name == "web"
    assert web.image == "nginx"
    assert web.ports == [
        PortMapping(host=8080, container=80, protocol="tcp"),
        PortMapping(host=5432, container=5432, protocol="udp", host_ip="127.0.0.1"),
        PortMapping(host=0, container=3000, protocol="tcp"),
        PortMapping(host=0, container=90, protocol="tcp"),
        PortMapping(host=8443, container=443, protocol="tcp", host_ip="0.0.0.0"),
    ]


def test_unquoted_colon_port_stays_a_mapping(tmp_path, parser):
    path = write(
        tmp_path,
        """
        services:
          ssh:
            ports:
              - 22:22
        """,
    )
    ports = parser.parse_compose_file(path).services["ssh"].ports
    assert ports == [PortMapping(host=22, container=22, protocol="tcp")]


def test_unquoted_version_number_is_ignored(tmp_path, parser):
    path = write(tmp_path, "version: 3.8\nservices:\n  a:\n    image: x\n")
    assert parser.parse_compose_file(path).version == ""


def test_invalid_port_string_raises(tmp_path, parser):
    path = write(tmp_path, 'services:\n  web:\n    ports:\n      - "80-90:80"\n')
    with pytest.raises(AppError) as info:
        parser.parse_compose_file(path)
    assert info.value.code is ErrorCode.PARSE_FAILED
    assert "web" in str(info.value)


def test_ports_not_a_list_raises(tmp_path, parser):
    path = write(tmp_path, 'services:\n  web:\n    ports: "8080:80"\n')
    with pytest.raises(AppError) as info:
        parser.parse_compose_file(path)
    assert info.value.code is ErrorCode.PARSE_FAILED
    assert info.value.fields["ports_type"] == "str"


def test_invalid_published_port_raises(parser):
    with pytest.raises(AppError) as info:
        parser.parse_service_ports({"ports": [{"target": 80, "published": "abc"}]})
    assert info.value.code is ErrorCode.PARSE_FAILED


def test_parse_service_ports_without_ports(parser):
    assert parser.parse_service_ports({"image": "nginx"}) == []


def test_unsupported_port_type_is_skipped(parser):
    ports = parser.parse_service_ports({"ports": [1.5, True, "8080:80"]})
    assert ports == [PortMapping(host=8080, container=80, protocol="tcp")]


def test_missing_file(tmp_path, parser):
    with pytest.raises(AppError) as info:
        parser.parse_compose_file(str(tmp_path / "nope.yml"))
    assert info.value.code is ErrorCode.FILE_NOT_FOUND


def test_directory_cannot_be_read(tmp_path, parser):
    with pytest.raises(AppError) as info:
        parser.parse_compose_file(str(tmp_path))
    assert info.value.code is ErrorCode.FILE_READ_FAILED


def test_invalid_yaml(tmp_path, parser):
    path = write(tmp_path, "services: [unclosed\n")
    with pytest.raises(AppError) as info:
        parser.parse_compose_file(path)
    assert info.value.code is ErrorCode.PARSE_FAILED


def test_top_level_list_is_rejected(tmp_path, parser):
    path = write(tmp_path, "- a\n- b\n")
    with pytest.raises(AppError) as info:
        parser.parse_compose_file(path)
    assert info.value.code is ErrorCode.PARSE_FAILED


@pytest.mark.parametrize("text", ["version: '3.8'\n", "", "services: [a, b]\n"])
def test_services_section_required_and_mapping(tmp_path, parser, text):
    path = write(tmp_path, text)
    with pytest.raises(AppError) as info:
        parser.parse_compose_file(path)
    assert info.value.code is ErrorCode.PARSE_FAILED


def test_non_mapping_service_is_skipped(tmp_path, parser):
    path = write(tmp_path, "services:\n  bad: hello\n  good:\n    image: x\n")
    assert list(parser.parse_compose_file(path).services) == ["good"]


def test_environment_and_depends_on(tmp_path, parser):
    path = write(
        tmp_path,
        """
        services:
          a:
            environment:
              - FOO=bar=baz
              - EMPTY
            depends_on: [db, cache]
          b:
            environment:
              DEBUG: true
              PORT: 5000
              NAME: app
            depends_on:
              db:
                condition: service_healthy
        """,
    )
    services = parser.parse_compose_file(path).services
    assert services["a"].environment == {"FOO": "bar=baz", "EMPTY": ""}
    assert services["a"].depends_on == ["db", "cache"]
    assert services["b"].environment == {"DEBUG": "true", "PORT": "5000", "NAME": "app"}
    assert services["b"].depends_on == ["db"]


def test_networks_and_volumes(tmp_path, parser):
    path = write(
        tmp_path,
        """
        services:
          a:
            networks: [front]
          b:
            networks:
              back:
                ipv4_address: 172.20.0.5
        networks:
          back:
            ipam:
              config:
                - subnet: 172.20.0.0/16
                  gateway: 172.20.0.1
            labels:
              tier: backend
          front:
            driver: overlay
          broken: null
        volumes:
          data:
            driver_opts:
              type: tmpfs
              size: 100
          other: null
        """,
    )
    config = parser.parse_compose_file(path)
    assert config.services["a"].networks == {"front": ServiceNetwork()}
    assert config.services["b"].networks == {
        "back": ServiceNetwork(ipv4_address="172.20.0.5")
    }
    back = config.networks["back"]
    assert back.driver == "bridge"
    assert back.ipam.driver == "default"
    assert back.ipam.config[0].subnet == "172.20.0.0/16"
    assert back.ipam.config[0].gateway == "172.20.0.1"
    assert back.labels == {"tier": "backend"}
    assert config.networks["front"].driver == "overlay"
    assert config.networks["front"].ipam.config == []
    assert "broken" not in config.networks
    data = config.volumes["data"]
    assert data.driver == "local"
    assert data.driver_opts == {"type": "tmpfs", "size": "100"}
    assert list(config.volumes) == ["data"]


def test_unsupported_version_warns():
    stream = io.StringIO()
    logger = Logger(stream, level=logging.DEBUG, detailed=True)
    result = ComposeParser(logger).validate_compose_version("2.4")
    assert result is None
    assert "未サポートのDocker Composeバージョンです" in stream.getvalue()
    assert "WARN" in stream.getvalue()


def test_supported_version_with_patch_is_debug():
    stream = io.StringIO()
    logger = Logger(stream, level=logging.DEBUG, detailed=True)
    ComposeParser(logger).validate_compose_version("3.8.1")
    output = stream.getvalue()
    assert "サポートされているDocker Composeバージョン" in output
    assert "未サポート" not in output


def test_detector_orders_candidates(tmp_path):
    (tmp_path / "compose.yaml").write_text("services: {}\n")
    (tmp_path / "docker-compose.yml").write_text("services: {}\n")
    detector = ComposeFileDetector()
    found = detector.detect_compose_files(str(tmp_path))
    assert found == [
        os.path.join(str(tmp_path), "docker-compose.yml"),
        os.path.join(str(tmp_path), "compose.yaml"),
    ]
    assert detector.get_default_compose_file(str(tmp_path)) == found[0]


def test_detector_nothing_found(tmp_path):
    with pytest.raises(AppError) as info:
        ComposeFileDetector().get_default_compose_file(str(tmp_path))
    assert info.value.code is ErrorCode.FILE_NOT_FOUND
    assert info.value.fields["directory"] == str(tmp_path)
    assert "compose.yml" in info.value.fields["candidates"]