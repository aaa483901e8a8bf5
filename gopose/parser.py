"""Docker Compose file parsing and compose file discovery."""

from __future__ import annotations

import os
import re
from typing import Any

import yaml

from .errors import AppError, ErrorCode
from .logger import Logger, NopLogger
from .models import (
    IPAM,
    ComposeConfig,
    IPAMConfig,
    Network,
    PortMapping,
    Service,
    ServiceNetwork,
    Volume,
)

SUPPORTED_VERSIONS = ("3.0", "3.1", "3.2", "3.3", "3.4", "3.5", "3.6", "3.7", "3.8", "3.9")

COMPOSE_FILE_CANDIDATES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

_PORT_RE = re.compile(r"(?:([^:]+):)?(\d+):(\d+)|(\d+)", re.ASCII)
_ATOI_RE = re.compile(r"[+-]?\d+", re.ASCII)
_INT64_MAX = 2**63 - 1
_INT64_MIN = -(2**63)

_INT_TAG = "tag:yaml.org,2002:int"
_FLOAT_TAG = "tag:yaml.org,2002:float"


class _ComposeLoader(yaml.SafeLoader):
    """Safe loader without YAML 1.1 base-60 numbers, so "22:22" stays a string."""


_ComposeLoader.yaml_implicit_resolvers = {
    first: [(tag, rx) for tag, rx in resolvers if tag not in (_INT_TAG, _FLOAT_TAG)]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_ComposeLoader.add_implicit_resolver(
    _INT_TAG,
    re.compile(
        r"""^(?:[-+]?0b[0-1_]+
            |[-+]?0[0-7_]+
            |[-+]?(?:0|[1-9][0-9_]*)
            |[-+]?0x[0-9a-fA-F_]+)$""",
        re.X,
    ),
    list("-+0123456789"),
)
_ComposeLoader.add_implicit_resolver(
    _FLOAT_TAG,
    re.compile(
        r"""^(?:[-+]?(?:[0-9][0-9_]*)\.[0-9_]*(?:[eE][-+][0-9]+)?
            |\.[0-9_]+(?:[eE][-+][0-9]+)?
            |[-+]?\.(?:inf|Inf|INF)
            |\.(?:nan|NaN|NAN))$""",
        re.X,
    ),
    list("-+0123456789."),
)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _atoi(text: str) -> int:
    """Strict decimal integer parsing within the signed 64-bit range."""
    if not _ATOI_RE.fullmatch(text):
        raise ValueError(f"invalid syntax: {text!r}")
    number = int(text)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise ValueError(f"value out of range: {text!r}")
    return number


def _plain(value: Any) -> str:
    """Render a scalar or collection the way a default text formatter would."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return "[" + " ".join(_plain(item) for item in value) + "]"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "map[" + " ".join(f"{_plain(k)}:{_plain(v)}" for k, v in items) + "]"
    return str(value)


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {
        str(key): value if isinstance(value, str) else _plain(value)
        for key, value in raw.items()
    }


def _string_or(raw: dict[str, Any], key: str, default: str) -> str:
    value = raw.get(key)
    return value if isinstance(value, str) else default


class ComposeParser:
    """Reads a Docker Compose YAML file into a ComposeConfig."""

    def __init__(self, logger: Logger | None = None) -> None:
        self.logger = logger if logger is not None else NopLogger()

    def parse_compose_file(self, path: str) -> ComposeConfig:
        """Parse the compose file at path."""
        self.logger.debug("Docker Composeファイル解析開始", file=path)

        if not os.path.exists(path):
            raise AppError(
                ErrorCode.FILE_NOT_FOUND,
                f"Docker Composeファイルが見つかりません: {path}",
                fields={"file_path": path},
            )

        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise AppError(
                ErrorCode.FILE_READ_FAILED,
                f"ファイル読み込みに失敗しました: {path}",
                cause=exc,
                fields={"file_path": path},
            ) from exc

        try:
            raw = yaml.load(data, Loader=_ComposeLoader)
        except yaml.YAMLError as exc:
            raise AppError(
                ErrorCode.PARSE_FAILED,
                "YAMLの解析に失敗しました",
                cause=exc,
                fields={"file_path": path},
            ) from exc

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise AppError(
                ErrorCode.PARSE_FAILED,
                "YAMLの解析に失敗しました",
                cause=TypeError(f"top level is {type(raw).__name__}, not a mapping"),
                fields={"file_path": path},
            )

        config = self._convert_config(raw, path)
        self.logger.info(
            "Docker Composeファイル解析完了",
            file=path,
            services_count=len(config.services),
        )
        return config

    def parse_service_ports(self, service: dict[str, Any]) -> list[PortMapping]:
        """Port mappings of a raw service mapping; entries of unknown type are skipped."""
        if "ports" not in service:
            return []
        ports = service["ports"]
        if not isinstance(ports, list):
            raise AppError(
                ErrorCode.PARSE_FAILED,
                "ポート設定の形式が無効です",
                fields={"ports_type": type(ports).__name__},
            )
        mappings = (self._parse_port(entry) for entry in ports)
        return [mapping for mapping in mappings if mapping is not None]

    def validate_compose_version(self, version: str) -> None:
        """Log whether the version is supported; never fails."""
        if not version:
            self.logger.warn("Docker Composeバージョンが指定されていません")
            return
        if any(
            version == supported or version.startswith(supported + ".")
            for supported in SUPPORTED_VERSIONS
        ):
            self.logger.debug("サポートされているDocker Composeバージョン", version=version)
            return
        self.logger.warn(
            "未サポートのDocker Composeバージョンです",
            version=version,
            supported_versions=list(SUPPORTED_VERSIONS),
        )

    # --- conversion -------------------------------------------------------

    def _convert_config(self, raw: dict[str, Any], path: str) -> ComposeConfig:
        version = raw.get("version")
        config = ComposeConfig(
            version=version if isinstance(version, str) else "",
            file_path=path,
        )
        self.validate_compose_version(config.version)

        if "services" not in raw:
            raise AppError(ErrorCode.PARSE_FAILED, "servicesセクションが見つかりません")
        services = raw["services"]
        if not isinstance(services, dict):
            raise AppError(ErrorCode.PARSE_FAILED, "servicesセクションの形式が無効です")

        for name, body in services.items():
            name = str(name)
            if not isinstance(body, dict):
                self.logger.warn("サービス設定の形式が無効です", service=name)
                continue
            try:
                config.services[name] = self._convert_service(name, body)
            except AppError as exc:
                raise AppError(
                    exc.code, f"サービス {name} の解析に失敗", cause=exc, fields=exc.fields
                ) from exc

        networks = raw.get("networks")
        if isinstance(networks, dict):
            for name, body in networks.items():
                name = str(name)
                if not isinstance(body, dict):
                    self.logger.warn("ネットワーク設定の形式が無効です", network=name)
                    continue
                config.networks[name] = self._convert_network(body)

        volumes = raw.get("volumes")
        if isinstance(volumes, dict):
            for name, body in volumes.items():
                name = str(name)
                if not isinstance(body, dict):
                    self.logger.warn("ボリューム設定の形式が無効です", volume=name)
                    continue
                config.volumes[name] = self._convert_volume(body)

        return config

    def _convert_service(self, name: str, body: dict[str, Any]) -> Service:
        service = Service(name=name, image=_string_or(body, "image", ""))
        service.ports = self.parse_service_ports(body)
        if "environment" in body:
            service.environment = self._parse_environment(body["environment"])
        if "depends_on" in body:
            service.depends_on = self._parse_depends_on(body["depends_on"])
        if "networks" in body:
            service.networks = self._parse_service_networks(body["networks"])
        return service

    def _parse_port(self, entry: Any) -> PortMapping | None:
        if isinstance(entry, str):
            return self._parse_port_string(entry)
        if _is_int(entry):
            return PortMapping(container=entry, protocol="tcp")
        if isinstance(entry, dict):
            return self._parse_port_object(entry)
        self.logger.warn("サポートされていないポート形式", port_type=type(entry).__name__)
        return None

    @staticmethod
    def _parse_port_string(text: str) -> PortMapping:
        protocol = "tcp"
        port_part = text
        if "/" in text:
            parts = text.split("/")
            if len(parts) == 2:
                port_part, protocol = parts

        match = _PORT_RE.fullmatch(port_part)
        if match is None:
            raise AppError(ErrorCode.PARSE_FAILED, f"無効なポート形式: {text}")
        host_ip, host_text, container_text, single_text = match.groups()

        def number(value: str, message: str) -> int:
            try:
                return _atoi(value)
            except ValueError as exc:
                raise AppError(ErrorCode.PARSE_FAILED, f"{message}: {value}", cause=exc) from exc

        if single_text:
            host = 0
            container = number(single_text, "コンテナポートの解析に失敗")
        else:
            host = number(host_text, "ホストポートの解析に失敗")
            container = number(container_text, "コンテナポートの解析に失敗")

        return PortMapping(
            host=host, container=container, protocol=protocol, host_ip=host_ip or ""
        )

    @staticmethod
    def _parse_port_object(body: dict[str, Any]) -> PortMapping:
        mapping = PortMapping(protocol="tcp")

        def port_value(key: str) -> int | None:
            value = body.get(key)
            if _is_int(value):
                return value
            if isinstance(value, str):
                try:
                    return _atoi(value)
                except ValueError as exc:
                    raise AppError(
                        ErrorCode.PARSE_FAILED,
                        f"{key}ポートの解析に失敗: {value}",
                        cause=exc,
                    ) from exc
            return None

        published = port_value("published")
        if published is not None:
            mapping.host = published
        target = port_value("target")
        if target is not None:
            mapping.container = target
        mapping.protocol = _string_or(body, "protocol", mapping.protocol)
        mapping.host_ip = _string_or(body, "host_ip", mapping.host_ip)
        return mapping

    @staticmethod
    def _parse_environment(env: Any) -> dict[str, str]:
        if isinstance(env, list):
            result: dict[str, str] = {}
            for item in env:
                if isinstance(item, str):
                    key, _, value = item.partition("=")
                    result[key] = value
            return result
        return _string_map(env)

    @staticmethod
    def _parse_depends_on(depends: Any) -> list[str]:
        if isinstance(depends, list):
            return [item for item in depends if isinstance(item, str)]
        if isinstance(depends, dict):
            return [str(key) for key in depends]
        return []

    @staticmethod
    def _parse_service_networks(networks: Any) -> dict[str, ServiceNetwork]:
        if isinstance(networks, list):
            return {name: ServiceNetwork() for name in networks if isinstance(name, str)}
        if isinstance(networks, dict):
            result: dict[str, ServiceNetwork] = {}
            for name, body in networks.items():
                address = _string_or(body, "ipv4_address", "") if isinstance(body, dict) else ""
                result[str(name)] = ServiceNetwork(ipv4_address=address)
            return result
        return {}

    @staticmethod
    def _convert_network(body: dict[str, Any]) -> Network:
        network = Network(driver=_string_or(body, "driver", "bridge"), ipam=IPAM(driver="default"))
        ipam = body.get("ipam")
        if isinstance(ipam, dict):
            network.ipam = ComposeParser._convert_ipam(ipam)
        network.labels = _string_map(body.get("labels"))
        return network

    @staticmethod
    def _convert_ipam(body: dict[str, Any]) -> IPAM:
        ipam = IPAM(driver=_string_or(body, "driver", "default"))
        entries = body.get("config")
        if isinstance(entries, list):
            ipam.config = [
                IPAMConfig(
                    subnet=_string_or(entry, "subnet", ""),
                    gateway=_string_or(entry, "gateway", ""),
                )
                for entry in entries
                if isinstance(entry, dict)
            ]
        return ipam

    @staticmethod
    def _convert_volume(body: dict[str, Any]) -> Volume:
        return Volume(
            driver=_string_or(body, "driver", "local"),
            driver_opts=_string_map(body.get("driver_opts")),
            labels=_string_map(body.get("labels")),
        )


class ComposeFileDetector:
    """Finds the standard Docker Compose files in a directory."""

    def __init__(self, logger: Logger | None = None) -> None:
        self.logger = logger if logger is not None else NopLogger()

    def detect_compose_files(self, directory: str) -> list[str]:
        """Paths of the compose files present, in order of preference."""
        self.logger.debug("Docker Composeファイル検出開始", directory=directory)
        found = []
        for candidate in COMPOSE_FILE_CANDIDATES:
            path = os.path.join(directory, candidate)
            if os.path.exists(path):
                found.append(path)
                self.logger.debug("Docker Composeファイル発見", file=path)

        if not found:
            raise AppError(
                ErrorCode.FILE_NOT_FOUND,
                f"Docker Composeファイルが見つかりません: {directory}",
                fields={"directory": directory, "candidates": list(COMPOSE_FILE_CANDIDATES)},
            )

        self.logger.info(
            "Docker Composeファイル検出完了", directory=directory, found_count=len(found)
        )
        return found

    def get_default_compose_file(self, directory: str) -> str:
        """The most preferred compose file in the directory."""
        return self.detect_compose_files(directory)[0]