"""Detection of port and network conflicts for a compose project."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .errors import AppError, ErrorCode
from .logger import Logger, NopLogger
from .models import (
    ComposeConfig,
    ConflictType,
    NetworkConflictInfo,
    NetworkConflictType,
    PortConflictInfo,
    UnifiedConflictInfo,
)
from .network import NetworkInfo


class _PortDetector(Protocol):
    def detect_used_ports(self) -> list[int]: ...


class _NetworkDetector(Protocol):
    def detect_networks(self) -> list[NetworkInfo]: ...


def _service_network_ips(config: ComposeConfig, network_name: str) -> dict[str, str]:
    ips: dict[str, str] = {}
    for service_name, service in config.services.items():
        attachment = service.networks.get(network_name)
        if attachment is not None and attachment.ipv4_address:
            ips[service_name] = attachment.ipv4_address
    return ips


class UnifiedConflictDetector:
    """Finds port conflicts with the system and within the file, and network conflicts."""

    def __init__(
        self,
        port_detector: _PortDetector,
        network_detector: _NetworkDetector,
        logger: Logger | None = None,
    ) -> None:
        self.port_detector = port_detector
        self.network_detector = network_detector
        self.logger = logger if logger is not None else NopLogger()

    def detect_conflicts(self, config: ComposeConfig, project_name: str) -> UnifiedConflictInfo:
        """Port and network conflicts; a failing network check yields no network conflicts."""
        self.logger.info("統一的な衝突検知を開始")
        info = UnifiedConflictInfo(generated_at=datetime.now())

        try:
            info.port_conflicts = self.detect_port_conflicts(config)
        except AppError as exc:
            raise AppError(exc.code, "ポート衝突検知に失敗", cause=exc, fields=exc.fields) from exc

        try:
            info.network_conflicts = self.detect_network_conflicts(config, project_name)
        except Exception as exc:  # any failure of the docker check is tolerated
            self.logger.warn("ネットワーク衝突検知に失敗しました", error=str(exc))
            info.network_conflicts = []

        self.logger.info(
            "統一的な衝突検知完了",
            port_conflicts=len(info.port_conflicts),
            network_conflicts=len(info.network_conflicts),
        )
        return info

    def detect_port_conflicts(self, config: ComposeConfig) -> list[PortConflictInfo]:
        """Host ports in use on the system or bound by more than one service."""
        self.logger.debug("ポート衝突検知開始")
        try:
            used = set(self.port_detector.detect_used_ports())
        except AppError as exc:
            raise AppError(
                exc.code, "システムポート検出に失敗", cause=exc, fields=exc.fields
            ) from exc
        except Exception as exc:
            raise AppError(ErrorCode.PORT_SCAN_FAILED, "システムポート検出に失敗", cause=exc) from exc

        conflicts: list[PortConflictInfo] = []
        bound: dict[int, str] = {}
        for service_name, service in config.services.items():
            for mapping in service.ports:
                port = mapping.host
                if port == 0:
                    continue
                conflict = PortConflictInfo(
                    service=service_name,
                    service_name=service_name,
                    port=port,
                    protocol=mapping.protocol,
                )
                if port in used:
                    conflict.type = ConflictType.SYSTEM
                    conflict.description = f"ポート {port} は既にシステムで使用されています"
                    conflicts.append(conflict)
                    self.logger.warn("システムポート衝突検出", port=port, service=service_name)
                elif port in bound:
                    existing = bound[port]
                    conflict.type = ConflictType.COMPOSE
                    conflict.description = (
                        f"ポート {port} はサービス {existing} と {service_name} で重複しています"
                    )
                    conflicts.append(conflict)
                    self.logger.warn(
                        "Composeポート衝突検出", port=port, service1=existing, service2=service_name
                    )
                else:
                    bound[port] = service_name

        self.logger.debug("ポート衝突検知完了", conflicts_count=len(conflicts))
        return conflicts

    def detect_network_conflicts(
        self, config: ComposeConfig, project_name: str
    ) -> list[NetworkConflictInfo]:
        """Networks whose name or first subnet is already taken by Docker."""
        self.logger.debug("ネットワーク衝突検知開始")
        try:
            existing = self.network_detector.detect_networks()
        except Exception as exc:
            raise AppError(
                ErrorCode.DOCKER_API_FAILED, "既存Dockerネットワークの検出に失敗", cause=exc
            ) from exc

        used_names = {network.name for network in existing}
        used_subnets = {subnet for network in existing for subnet in network.subnets}
        prefix = f"{project_name}_" if project_name else ""

        conflicts: list[NetworkConflictInfo] = []
        for name, network in config.networks.items():
            if not network.ipam.config:
                continue
            subnet = network.ipam.config[0].subnet
            if not subnet:
                continue

            actual_name = prefix + name
            if actual_name in used_names:
                conflicts.append(
                    NetworkConflictInfo(
                        network_name=name,
                        conflict_type=NetworkConflictType.NAME,
                        original_subnet=subnet,
                        conflicting_network=actual_name,
                        description=f"ネットワーク名 {actual_name} は既に使用されています",
                    )
                )

            if subnet in used_subnets:
                conflicts.append(
                    NetworkConflictInfo(
                        network_name=name,
                        conflict_type=NetworkConflictType.SUBNET,
                        original_subnet=subnet,
                        conflicting_subnet=subnet,
                        description=f"サブネット {subnet} は既に使用されています",
                        service_ips=_service_network_ips(config, name),
                    )
                )

        self.logger.debug("ネットワーク衝突検知完了", conflicts_count=len(conflicts))
        return conflicts