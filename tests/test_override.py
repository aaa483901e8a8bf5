import io
import logging

import pytest

from gopose.errors import AppError, ErrorCode
from gopose.logger import Logger
from gopose.models import (
    IPAM,
    ComposeConfig,
    ConflictResolution,
    IPAMConfig,
    NetworkOverride,
    OverrideConfig,
    OverrideMetadata,
    PortMapping,
    Service,
    ServiceNetwork,
    ServiceOverride,
)
from gopose.override import GENERATOR_VERSION, OverrideGenerator, OverrideTemplateGenerator


def _capturing_logger():
    stream = io.StringIO()
    return Logger(stream, level=logging.DEBUG, detailed=True), stream


def _compose():
    return ComposeConfig(
        services={
            "web": Service(
                name="web",
                ports=[
                    PortMapping(host=8080, container=80, protocol="tcp"),
                    PortMapping(host=8443, container=443, protocol="tcp"),
                ],
            ),
            "worker": Service(name="worker"),
        }
    )


def test_generate_override_applies_resolution_and_keeps_other_ports():
    config = _compose()
    resolution = ConflictResolution(service_name="web", conflict_port=8080, resolved_port=8081)
    override = OverrideGenerator().generate_override(config, [resolution])

    assert list(override.services) == ["web"]
    hosts = [mapping.host for mapping in override.services["web"].ports]
    assert hosts == [8081, 8443]
    assert override.metadata.version == GENERATOR_VERSION == "1.0.0"
    assert override.metadata.resolutions == [resolution]
    # the original compose configuration is left untouched
    assert config.services["web"].ports[0].host == 8080


def test_generate_override_groups_by_service_fallback():
    config = _compose()
    resolution = ConflictResolution(service="web", conflict_port=8443, resolved_port=8444)
    override = OverrideGenerator().generate_override(config, [resolution])
    assert [m.host for m in override.services["web"].ports] == [8080, 8444]


def test_validate_override_accepts_valid_override():
    logger, stream = _capturing_logger()
    override = OverrideConfig(
        services={"web": ServiceOverride(ports=[PortMapping(host=8081, container=80)])}
    )
    assert OverrideGenerator(logger).validate_override(override) is None
    assert "Override検証完了" in stream.getvalue()


def test_validate_override_rejects_duplicate_host_port():
    override = OverrideConfig(
        services={
            "web": ServiceOverride(
                ports=[PortMapping(host=8081, container=80), PortMapping(host=8081, container=81)]
            )
        }
    )
    with pytest.raises(AppError) as info:
        OverrideGenerator().validate_override(override)
    assert info.value.code is ErrorCode.VALIDATION_FAILED
    assert "web" in str(info.value)


def test_validate_override_rejects_invalid_container_port():
    override = OverrideConfig(
        services={"web": ServiceOverride(ports=[PortMapping(host=8081, container=0)])}
    )
    with pytest.raises(AppError) as info:
        OverrideGenerator().validate_override(override)
    assert info.value.code is ErrorCode.VALIDATION_FAILED


def test_validate_override_rejects_duplicate_resolved_ports():
    override = OverrideConfig(
        services={"web": ServiceOverride(ports=[PortMapping(host=8081, container=80)])},
        metadata=OverrideMetadata(
            resolutions=[
                ConflictResolution(service_name="web", resolved_port=8081),
                ConflictResolution(service_name="api", resolved_port=8081),
            ]
        ),
    )
    with pytest.raises(AppError) as info:
        OverrideGenerator().validate_override(override)
    assert info.value.fields["service1"] == "web"
    assert info.value.fields["service2"] == "api"


def test_validate_override_without_services_warns():
    logger, stream = _capturing_logger()
    OverrideGenerator(logger).validate_override(OverrideConfig())
    assert "オーバーライドするサービスがありません" in stream.getvalue()


def test_render_layout():
    override = OverrideConfig(
        name="proj",
        services={
            "web": ServiceOverride(
                ports=[PortMapping(host=8081, container=80), PortMapping(host=0, container=9000)],
                networks={"front": ServiceNetwork(ipv4_address="10.20.0.5")},
            )
        },
        networks={"front": NetworkOverride(ipam=IPAM(config=[IPAMConfig(subnet="10.20.0.0/24")]))},
    )
    text = OverrideGenerator().render(override)
    lines = text.splitlines()
    assert lines[0] == "name: proj"
    assert "        ports: !override" in lines
    assert '            - "8081:80"' in lines
    assert not any("9000" in line for line in lines)
    assert "                ipv4_address: 10.20.0.5" in lines
    assert '                - subnet: "10.20.0.0/24"' in lines
    assert lines.index("networks:") > lines.index("services:")


def test_write_override_file_creates_directories(tmp_path):
    override = OverrideConfig(
        services={"web": ServiceOverride(ports=[PortMapping(host=8081, container=80)])}
    )
    generator = OverrideGenerator()
    target = tmp_path / "nested" / "docker-compose.override.yml"
    generator.write_override_file(override, str(target))
    content = target.read_text(encoding="utf-8")
    assert content.startswith("# Docker Compose Override File\n")
    assert content.endswith(generator.render(override))


def test_write_override_file_fails_when_parent_is_a_file(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    with pytest.raises(AppError) as info:
        OverrideGenerator().write_override_file(OverrideConfig(), str(blocker / "out.yml"))
    assert info.value.code is ErrorCode.FILE_WRITE_FAILED


TEMPLATE = """\
name: demo
services:
  web:
    ports:
      - host: 8081
        container: 80
        protocol: tcp
    networks:
      front:
        ipv4_address: 10.20.0.5
networks:
  front:
    ipam:
      config:
        - subnet: 10.20.0.0/24
x-gopose-metadata:
  version: "1.0.0"
"""


def test_generate_from_template(tmp_path):
    path = tmp_path / "template.yml"
    path.write_text(TEMPLATE, encoding="utf-8")
    override = OverrideTemplateGenerator().generate_from_template(str(path))
    assert override.name == "demo"
    assert override.services["web"].ports == [PortMapping(host=8081, container=80, protocol="tcp")]
    assert override.services["web"].networks["front"].ipv4_address == "10.20.0.5"
    assert override.networks["front"].ipam.config[0].subnet == "10.20.0.0/24"
    assert override.metadata.version == "1.0.0"


def test_generate_from_template_missing_file(tmp_path):
    with pytest.raises(AppError) as info:
        OverrideTemplateGenerator().generate_from_template(str(tmp_path / "absent.yml"))
    assert info.value.code is ErrorCode.FILE_READ_FAILED


def test_generate_from_template_bad_yaml(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("services: [unclosed", encoding="utf-8")
    with pytest.raises(AppError) as info:
        OverrideTemplateGenerator().generate_from_template(str(path))
    assert info.value.code is ErrorCode.PARSE_FAILED


def test_validate_template_missing_file(tmp_path):
    with pytest.raises(AppError) as info:
        OverrideTemplateGenerator().validate_template(str(tmp_path / "absent.yml"))
    assert info.value.code is ErrorCode.FILE_NOT_FOUND


def test_validate_template_bad_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("a: [b", encoding="utf-8")
    with pytest.raises(AppError) as info:
        OverrideTemplateGenerator().validate_template(str(path))
    assert info.value.code is ErrorCode.VALIDATION_FAILED


def test_validate_template_accepts_rendered_override(tmp_path):
    override = OverrideConfig(
        services={"web": ServiceOverride(ports=[PortMapping(host=8081, container=80)])}
    )
    path = tmp_path / "rendered.txt"
    OverrideGenerator().write_override_file(override, str(path))
    logger, stream = _capturing_logger()
    OverrideTemplateGenerator(logger).validate_template(str(path))
    output = stream.getvalue()
    assert "テンプレートファイルの拡張子が標準的ではありません" in output
    assert "テンプレート検証完了" in output