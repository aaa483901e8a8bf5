"""Discovery of existing Docker networks and their subnets."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .logger import Logger, NopLogger

Runner = Callable[[Sequence[str]], str]


def _run_command(args: Sequence[str]) -> str:
    completed = subprocess.run(list(args), capture_output=True, check=True, text=True)
    return completed.stdout


@dataclass
class NetworkInfo:
    """An existing Docker network and the subnets configured on it."""

    name: str = ""
    subnets: list[str] = field(default_factory=list)


class DockerNetworkDetector:
    """Lists Docker networks through the docker command."""

    def __init__(self, logger: Logger | None = None, runner: Runner | None = None) -> None:
        self.logger = logger if logger is not None else NopLogger()
        self.runner = runner if runner is not None else _run_command

    def detect_networks(self) -> list[NetworkInfo]:
        """All current Docker networks; networks that cannot be inspected are skipped."""
        output = self.runner(["docker", "network", "ls", "-q"])
        networks: list[NetworkInfo] = []
        for network_id in output.split():
            try:
                inspected = self.runner(
                    ["docker", "network", "inspect", network_id, "--format", "{{json .}}"]
                )
                raw = json.loads(inspected)
            except (OSError, subprocess.SubprocessError, ValueError):
                continue
            info = self._to_info(raw)
            if info is not None:
                networks.append(info)
        return networks

    @staticmethod
    def _to_info(raw: object) -> NetworkInfo | None:
        if not isinstance(raw, dict):
            return None
        name = raw.get("Name")
        ipam = raw.get("IPAM") or {}
        entries = ipam.get("Config") if isinstance(ipam, dict) else None
        subnets = [
            entry["Subnet"]
            for entry in entries or []
            if isinstance(entry, dict) and isinstance(entry.get("Subnet"), str) and entry["Subnet"]
        ]
        return NetworkInfo(name=name if isinstance(name, str) else "", subnets=subnets)