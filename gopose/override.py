"""Building, validating, rendering and writing docker-compose.override.yml files."""

from __future__ import annotations

import dataclasses
import os
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import yaml

from .errors import AppError, ErrorCode
from .logger import Logger, NopLogger
from .models import (
    IPAM,
    ComposeConfig,
    ConflictResolution,
    IPAMConfig,
    NetworkOverride,
    OverrideConfig,
    OverrideMetadata,
    PortMapping,
    ResolutionStrategy,
    ServiceNetwork,
    ServiceOverride,
)

GENERATOR_VERSION = "1.0.0"

_HEADER = """# Docker Compose Override File
# Generated by gopose (Go Port Override Solution Engine)
# Generated at: {generated_at}
# 
# This file contains port mappings to resolve conflicts detected in your
# original docker-compose.yml file. The original file remains unchanged.
# 
# To use this override:
# 1. Keep this file in the same directory as your docker-compose.yml
# 2. Run: docker-compose up
# 
# Docker Compose will automatically merge both files.
# 
# WARNING: This file is auto-generated. Manual changes may be overwritten.

"""


class OverrideGenerator:
    """Creates override configurations from conflict resolutions and writes them out."""

    def __init__(self, logger: Logger | None = None) -> None:
        self.logger = logger if logger is not None else NopLogger()

    def generate_override(
        self, config: ComposeConfig, resolutions: Iterable[ConflictResolution]
    ) -> OverrideConfig:
        """An override holding the ports of every service that has any, with resolutions applied."""
        resolutions = list(resolutions)
        self.logger.debug("Override生成開始", resolutions_count=len(resolutions))

        override = OverrideConfig(
            version=config.version,
            metadata=OverrideMetadata(
                generated_at=datetime.now(),
                version=GENERATOR_VERSION,
                resolutions=resolutions,
            ),
        )

        by_service: dict[str, list[ConflictResolution]] = defaultdict(list)
        for resolution in resolutions:
            by_service[resolution.service_name or resolution.service].append(resolution)

        for name, service in config.services.items():
            if not service.ports:
                continue
            try:
                override.services[name] = self._service_override(
                    name, by_service.get(name, []), config
                )
            except AppError as exc:
                raise AppError(
                    exc.code,
                    f"サービス {name} のオーバーライド生成に失敗",
                    cause=exc,
                    fields=exc.fields,
                ) from exc

        self.logger.info("Override生成完了", services_count=len(override.services))
        return override

    def write_override_file(self, override: OverrideConfig, output_path: str) -> None:
        """Write the override, preceded by a header comment, creating directories as needed."""
        self.logger.debug("Overrideファイル書き込み開始", output_path=output_path)

        directory = os.path.dirname(output_path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            raise AppError(
                ErrorCode.FILE_WRITE_FAILED,
                f"ディレクトリ作成に失敗: {directory}",
                cause=exc,
                fields={"directory": directory},
            ) from exc

        content = self._file_header() + self.render(override)
        try:
            with open(output_path, "w", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as exc:
            raise AppError(
                ErrorCode.FILE_WRITE_FAILED,
                f"ファイル書き込みに失敗: {output_path}",
                cause=exc,
                fields={"file_path": output_path},
            ) from exc

        self.logger.info(
            "Overrideファイル書き込み完了",
            output_path=output_path,
            file_size=len(content.encode("utf-8")),
        )

    def validate_override(self, override: OverrideConfig) -> None:
        """Check host and container ports of every service and that resolved ports are unique."""
        self.logger.debug("Override検証開始")

        if not override.version:
            self.logger.debug(
                "Overrideのバージョンが指定されていませんが、"
                "Docker Composeの最新バージョンでは非推奨のため許可します"
            )

        if not override.services:
            self.logger.warn("オーバーライドするサービスがありません")
            return

        for name, service_override in override.services.items():
            try:
                self._validate_service(name, service_override)
            except AppError as exc:
                raise AppError(
                    exc.code, f"サービス {name} の検証に失敗", cause=exc, fields=exc.fields
                ) from exc

        self._validate_resolution_uniqueness(override.metadata.resolutions)
        self.logger.info("Override検証完了")

    def render(self, override: OverrideConfig) -> str:
        """The override as YAML, with ports marked by the !override tag."""
        lines: list[str] = []
        if override.name:
            lines.append(f"name: {override.name}")
            lines.append("")

        lines.append("services:")
        for name, service_override in override.services.items():
            lines.append(f"    {name}:")
            if service_override.ports:
                lines.append("        ports: !override")
                lines.extend(
                    f'            - "{port.host}:{port.container}"'
                    for port in service_override.ports
                    if port.host != 0
                )
            if service_override.networks:
                lines.append("        networks:")
                for net_name, attachment in service_override.networks.items():
                    lines.append(f"            {net_name}:")
                    if attachment.ipv4_address:
                        lines.append(f"                ipv4_address: {attachment.ipv4_address}")

        if override.networks:
            lines.append("networks:")
            for net_name, network_override in override.networks.items():
                lines.append(f"    {net_name}:")
                if network_override.ipam.config:
                    lines.append("        ipam:")
                    lines.append("            config:")
                    lines.extend(
                        f'                - subnet: "{entry.subnet}"'
                        for entry in network_override.ipam.config
                    )

        return "\n".join(lines) + "\n"

    # --- helpers ----------------------------------------------------------

    def _service_override(
        self,
        name: str,
        resolutions: list[ConflictResolution],
        config: ComposeConfig,
    ) -> ServiceOverride:
        original = config.services.get(name)
        if original is None:
            raise AppError(
                ErrorCode.VALIDATION_FAILED,
                f"元の設定にサービス {name} が見つかりません",
                fields={"service_name": name},
            )

        ports = [dataclasses.replace(mapping) for mapping in original.ports]
        for resolution in resolutions:
            for mapping in ports:
                if mapping.host == resolution.conflict_port:
                    mapping.host = resolution.resolved_port
                    self.logger.debug(
                        "ポートマッピング更新",
                        service=name,
                        old_port=resolution.conflict_port,
                        new_port=resolution.resolved_port,
                    )
                    break
        return ServiceOverride(ports=ports)

    @staticmethod
    def _validate_service(name: str, service_override: ServiceOverride) -> None:
        seen: set[int] = set()
        for mapping in service_override.ports:
            if mapping.host != 0:
                if mapping.host in seen:
                    raise AppError(
                        ErrorCode.VALIDATION_FAILED,
                        f"サービス {name} で重複するホストポート: {mapping.host}",
                        fields={"service": name, "host_port": mapping.host},
                    )
                seen.add(mapping.host)

            if not 0 <= mapping.host <= 65535:
                raise AppError(
                    ErrorCode.VALIDATION_FAILED,
                    f"無効なホストポート: {mapping.host}",
                    fields={"service": name, "host_port": mapping.host},
                )
            if not 1 <= mapping.container <= 65535:
                raise AppError(
                    ErrorCode.VALIDATION_FAILED,
                    f"無効なコンテナポート: {mapping.container}",
                    fields={"service": name, "container_port": mapping.container},
                )

    @staticmethod
    def _validate_resolution_uniqueness(resolutions: Iterable[ConflictResolution]) -> None:
        owners: dict[int, str] = {}
        for resolution in resolutions:
            service = resolution.service_name or resolution.service
            existing = owners.get(resolution.resolved_port)
            if existing is not None:
                raise AppError(
                    ErrorCode.VALIDATION_FAILED,
                    f"解決ポート {resolution.resolved_port} がサービス {existing} と "
                    f"{service} で重複しています",
                    fields={
                        "resolved_port": resolution.resolved_port,
                        "service1": existing,
                        "service2": service,
                    },
                )
            owners[resolution.resolved_port] = service

    @staticmethod
    def _file_header() -> str:
        generated_at = datetime.now().astimezone().isoformat(timespec="seconds")
        return _HEADER.format(generated_at=generated_at)


# --- templates --------------------------------------------------------------


class _TemplateLoader(yaml.SafeLoader):
    """Safe loader that reads locally tagged nodes (such as !override) as plain values."""


def _construct_tagged(loader: yaml.SafeLoader, suffix: str, node: yaml.Node) -> Any:
    if isinstance(node, yaml.MappingNode):
        return loader.construct_mapping(node, deep=True)
    if isinstance(node, yaml.SequenceNode):
        return loader.construct_sequence(node, deep=True)
    return loader.construct_scalar(node)


_TemplateLoader.add_multi_constructor("!", _construct_tagged)


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"{where}: expected a mapping, got {type(value).__name__}")
    return value


def _sequence(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{where}: expected a sequence, got {type(value).__name__}")
    return value


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise TypeError(f"{where}: expected a string, got {type(value).__name__}")
    return str(value)


def _integer(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{where}: expected an integer, got {type(value).__name__}")
    return value


def _timestamp(value: Any, where: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise TypeError(f"{where}: expected a timestamp, got {type(value).__name__}")


def _port_mapping(raw: Any) -> PortMapping:
    body = _mapping(raw, "ports")
    return PortMapping(
        host=_integer(body.get("host"), "host"),
        container=_integer(body.get("container"), "container"),
        protocol=_string(body.get("protocol"), "protocol"),
        host_ip=_string(body.get("host_ip"), "host_ip"),
    )


def _service_override(raw: Any) -> ServiceOverride:
    body = _mapping(raw, "service")
    networks = {
        str(name): ServiceNetwork(
            ipv4_address=_string(_mapping(attachment, "network").get("ipv4_address"), "ipv4_address")
        )
        for name, attachment in _mapping(body.get("networks"), "networks").items()
    }
    return ServiceOverride(
        ports=[_port_mapping(entry) for entry in _sequence(body.get("ports"), "ports")],
        networks=networks,
    )


def _ipam(raw: Any) -> IPAM:
    body = _mapping(raw, "ipam")
    return IPAM(
        driver=_string(body.get("driver"), "driver"),
        config=[
            IPAMConfig(
                subnet=_string(_mapping(entry, "config").get("subnet"), "subnet"),
                gateway=_string(_mapping(entry, "config").get("gateway"), "gateway"),
            )
            for entry in _sequence(body.get("config"), "config")
        ],
    )


def _network_override(raw: Any) -> NetworkOverride:
    body = _mapping(raw, "network")
    return NetworkOverride(
        driver=_string(body.get("driver"), "driver"),
        ipam=_ipam(body.get("ipam")),
        labels={
            str(key): _string(value, "labels")
            for key, value in _mapping(body.get("labels"), "labels").items()
        },
    )


def _resolution(raw: Any) -> ConflictResolution:
    body = _mapping(raw, "resolution")
    strategy_text = _string(body.get("strategy"), "strategy")
    return ConflictResolution(
        service=_string(body.get("service"), "service"),
        service_name=_string(body.get("servicename"), "servicename"),
        original_port=_integer(body.get("originalport"), "originalport"),
        conflict_port=_integer(body.get("conflictport"), "conflictport"),
        resolved_port=_integer(body.get("resolvedport"), "resolvedport"),
        strategy=ResolutionStrategy(strategy_text) if strategy_text else None,
        reason=_string(body.get("reason"), "reason"),
        timestamp=_timestamp(body.get("timestamp"), "timestamp"),
    )


def _override_from_raw(raw: Any) -> OverrideConfig:
    body = _mapping(raw, "document")
    metadata = _mapping(body.get("x-gopose-metadata"), "x-gopose-metadata")
    return OverrideConfig(
        name=_string(body.get("name"), "name"),
        version=_string(body.get("version"), "version"),
        services={
            str(name): _service_override(service)
            for name, service in _mapping(body.get("services"), "services").items()
        },
        networks={
            str(name): _network_override(network)
            for name, network in _mapping(body.get("networks"), "networks").items()
        },
        metadata=OverrideMetadata(
            generated_at=_timestamp(metadata.get("generated_at"), "generated_at"),
            version=_string(metadata.get("version"), "version"),
            resolutions=[
                _resolution(entry)
                for entry in _sequence(metadata.get("resolutions"), "resolutions")
            ],
        ),
    )


class OverrideTemplateGenerator:
    """Reads override configurations from YAML template files."""

    def __init__(self, logger: Logger | None = None) -> None:
        self.logger = logger if logger is not None else NopLogger()

    def generate_from_template(self, template_path: str) -> OverrideConfig:
        """The override described by the template file."""
        self.logger.debug("テンプレートからOverride生成開始", template_path=template_path)
        try:
            with open(template_path, encoding="utf-8") as handle:
                content = handle.read()
        except OSError as exc:
            raise AppError(
                ErrorCode.FILE_READ_FAILED,
                f"テンプレートファイル読み込みに失敗: {template_path}",
                cause=exc,
                fields={"template_path": template_path},
            ) from exc

        try:
            override = _override_from_raw(yaml.load(content, Loader=_TemplateLoader))
        except (yaml.YAMLError, TypeError, ValueError) as exc:
            raise AppError(
                ErrorCode.PARSE_FAILED,
                "テンプレートのYAML解析に失敗",
                cause=exc,
                fields={"template_path": template_path},
            ) from exc

        self.logger.info(
            "テンプレートからOverride生成完了", services_count=len(override.services)
        )
        return override

    def validate_template(self, template_path: str) -> None:
        """Check that the template exists and is well-formed YAML."""
        self.logger.debug("テンプレート検証開始", template_path=template_path)

        if not os.path.exists(template_path):
            raise AppError(
                ErrorCode.FILE_NOT_FOUND,
                f"テンプレートファイルが見つかりません: {template_path}",
                fields={"template_path": template_path},
            )

        extension = os.path.splitext(template_path)[1]
        if extension not in (".yml", ".yaml"):
            self.logger.warn("テンプレートファイルの拡張子が標準的ではありません", extension=extension)

        try:
            with open(template_path, encoding="utf-8") as handle:
                content = handle.read()
        except OSError as exc:
            raise AppError(
                ErrorCode.FILE_READ_FAILED, "テンプレートファイル読み込みに失敗", cause=exc
            ) from exc

        try:
            yaml.load(content, Loader=_TemplateLoader)
        except yaml.YAMLError as exc:
            raise AppError(
                ErrorCode.VALIDATION_FAILED,
                "テンプレートのYAML構文が無効です",
                cause=exc,
                fields={"template_path": template_path},
            ) from exc

        self.logger.info("テンプレート検証完了")