"""Resolution of unified port and network conflicts and the overrides they lead to."""

from __future__ import annotations

import dataclasses
from collections.abc import Collection, Mapping
from datetime import datetime
from typing import Protocol

from .errors import AppError
from .logger import Logger, NopLogger
from .models import (
    IPAM,
    ComposeConfig,
    ConflictResolution,
    IPAMConfig,
    NetworkConflictInfo,
    NetworkOverride,
    NetworkResolutionInfo,
    OverrideConfig,
    OverrideMetadata,
    PortConfig,
    PortConflictInfo,
    PortRange,
    PortResolutionInfo,
    ResolutionStrategy,
    ServiceNetwork,
    ServiceOverride,
    UnifiedConflictInfo,
)
from .override import GENERATOR_VERSION


class _PortAllocator(Protocol):
    def allocate_port(self, config: PortConfig) -> int: ...


def _candidate_subnets():
    for i in range(20, 256):
        yield f"10.{i}.0.0/24"
    for i in range(100, 256):
        yield f"192.168.{i}.0/24"
    for i in range(30, 256):
        yield f"172.{i}.0.0/24"


def allocate_subnet(used: Collection[str]) -> str | None:
    """The first /24 subnet from the safe ranges not in used, or None when all are taken."""
    return next((subnet for subnet in _candidate_subnets() if subnet not in used), None)


def remap_ip_addresses(
    old_subnet: str, new_subnet: str, service_ips: Mapping[str, str]
) -> dict[str, str]:
    """Move each address into the new subnet, keeping its last octet; malformed ones are dropped."""
    base = new_subnet.split("/")[0].split(".")
    if len(base) != 4:
        return {}
    remapped: dict[str, str] = {}
    for service, address in service_ips.items():
        parts = address.split(".")
        if len(parts) != 4:
            continue
        remapped[service] = ".".join([*base[:3], parts[3]])
    return remapped


class UnifiedOverrideGenerator:
    """Resolves detected conflicts and builds the override that applies the resolutions."""

    def __init__(self, port_allocator: _PortAllocator, logger: Logger | None = None) -> None:
        self.port_allocator = port_allocator
        self.logger = logger if logger is not None else NopLogger()

    def generate_from_conflicts(
        self, config: ComposeConfig, conflict_info: UnifiedConflictInfo
    ) -> OverrideConfig:
        """An override with the resolved ports, subnets and service addresses."""
        self.logger.debug(
            "統一的なOverride生成開始",
            port_conflicts=len(conflict_info.port_conflicts),
            network_conflicts=len(conflict_info.network_conflicts),
        )
        override = OverrideConfig(
            version=config.version,
            metadata=OverrideMetadata(generated_at=datetime.now(), version=GENERATOR_VERSION),
        )
        self._port_overrides(config, conflict_info.port_conflicts, override)
        self._network_overrides(conflict_info.network_conflicts, override)
        override.metadata.resolutions = [
            ConflictResolution(
                service_name=conflict.service_name,
                service=conflict.service,
                conflict_port=conflict.port,
                resolved_port=conflict.resolution.resolved_port,
                strategy=conflict.resolution.strategy,
                reason=conflict.resolution.reason,
                timestamp=conflict_info.generated_at,
            )
            for conflict in conflict_info.port_conflicts
            if conflict.resolution is not None
        ]
        self.logger.info(
            "統一的なOverride生成完了",
            services_count=len(override.services),
            networks_count=len(override.networks),
        )
        return override

    def resolve_conflicts(
        self,
        conflict_info: UnifiedConflictInfo,
        strategy: ResolutionStrategy,
        port_config: PortConfig,
    ) -> None:
        """Attach a resolution to every conflict that can be resolved."""
        self._resolve_ports(conflict_info.port_conflicts, strategy, port_config)
        self._resolve_networks(conflict_info.network_conflicts)

    # --- resolution -------------------------------------------------------

    def _resolve_ports(
        self,
        conflicts: list[PortConflictInfo],
        strategy: ResolutionStrategy,
        port_config: PortConfig,
    ) -> None:
        allocated: list[int] = []
        for conflict in conflicts:
            start = max(conflict.port + 1, port_config.range.start)
            request = PortConfig(
                range=PortRange(start=start, end=port_config.range.end),
                exclude_privileged=port_config.exclude_privileged,
                reserved=[*allocated, *port_config.reserved],
            )
            try:
                port = self.port_allocator.allocate_port(request)
            except AppError:
                request.range.start = port_config.range.start
                try:
                    port = self.port_allocator.allocate_port(request)
                except AppError:
                    self.logger.warn(
                        "適切な代替ポートが見つかりません",
                        service=conflict.service_name,
                        conflict_port=conflict.port,
                    )
                    continue

            conflict.resolution = PortResolutionInfo(
                resolved_port=port,
                strategy=strategy,
                reason=f"ポート {conflict.port} から {port} への自動変更",
            )
            allocated.append(port)
            self.logger.info(
                "ポート衝突解決", service=conflict.service_name, to=port, **{"from": conflict.port}
            )

    def _resolve_networks(self, conflicts: list[NetworkConflictInfo]) -> None:
        used: set[str] = set()
        for conflict in conflicts:
            subnet = allocate_subnet(used)
            if subnet is None:
                self.logger.warn("利用可能なサブネットが見つかりません", network=conflict.network_name)
                continue
            used.add(subnet)

            service_ips = (
                remap_ip_addresses(conflict.original_subnet, subnet, conflict.service_ips)
                if conflict.service_ips
                else {}
            )
            conflict.resolution = NetworkResolutionInfo(
                resolved_subnet=subnet,
                service_ips=service_ips,
                reason=f"サブネット {conflict.original_subnet} から {subnet} への自動変更",
            )
            self.logger.info(
                "ネットワーク衝突解決",
                network=conflict.network_name,
                to=subnet,
                **{"from": conflict.original_subnet},
            )

    # --- override building ------------------------------------------------

    @staticmethod
    def _port_overrides(
        config: ComposeConfig, conflicts: list[PortConflictInfo], override: OverrideConfig
    ) -> None:
        by_service: dict[str, list[PortConflictInfo]] = {}
        for conflict in conflicts:
            by_service.setdefault(conflict.service_name or conflict.service, []).append(conflict)

        for name, service_conflicts in by_service.items():
            original = config.services.get(name)
            if original is None:
                continue
            ports = [dataclasses.replace(mapping) for mapping in original.ports]
            for conflict in service_conflicts:
                if conflict.resolution is None:
                    continue
                for mapping in ports:
                    if mapping.host == conflict.port:
                        mapping.host = conflict.resolution.resolved_port
                        break
            override.services[name] = ServiceOverride(ports=ports)

    @staticmethod
    def _network_overrides(conflicts: list[NetworkConflictInfo], override: OverrideConfig) -> None:
        for conflict in conflicts:
            resolution = conflict.resolution
            if resolution is None:
                continue
            override.networks[conflict.network_name] = NetworkOverride(
                ipam=IPAM(config=[IPAMConfig(subnet=resolution.resolved_subnet)])
            )
            for service_name, address in resolution.service_ips.items():
                service_override = override.services.setdefault(service_name, ServiceOverride())
                service_override.networks[conflict.network_name] = ServiceNetwork(
                    ipv4_address=address
                )