"""Command line interface: the up, clean and status commands."""

from __future__ import annotations

import argparse
import dataclasses
import os
import re
import subprocess
import sys
from collections.abc import Sequence
from datetime import timedelta
from typing import Any

import yaml

from .config import default_config
from .detector import UnifiedConflictDetector
from .errors import AppError
from .logger import Logger, LoggerFactory
from .models import AppConfig, ComposeConfig, PortConfig, PortRange, ResolutionStrategy
from .network import DockerNetworkDetector
from .override import OverrideGenerator
from .parser import ComposeFileDetector, ComposeParser
from .scanner import NetstatPortDetector, PortAllocator
from .unified import UnifiedOverrideGenerator

DEFAULT_COMPOSE_FILE = "docker-compose.yml"
DEFAULT_OUTPUT_FILE = "docker-compose.override.yml"
DEFAULT_PORT_RANGE = PortRange(start=8000, end=9999)

_SETTINGS_NAMES = (".gopose.yaml", ".gopose.yml", ".gopose")

_STRATEGIES = {
    "auto": "auto_increment",
    "range": "range_allocation",
    "user": "user_defined",
}

_SKIP_COMPOSE_UP_WARNING = (
    "--skip-compose-upオプションは不要になりました。デフォルトでdocker compose upは実行されません。"
)

_FAILURES = (AppError, OSError, ValueError, subprocess.SubprocessError)


class CommandError(Exception):
    """A command failed; the message is shown to the user."""


# --- port range -------------------------------------------------------------


def _atoi(text: str) -> int:
    if not re.fullmatch(r"[+-]?\d+", text, re.ASCII):
        raise ValueError(text)
    return int(text)


def parse_port_range(text: str) -> PortRange:
    """Parse "start-end"; an empty string gives the default range 8000-9999."""
    if text == "":
        return PortRange(start=DEFAULT_PORT_RANGE.start, end=DEFAULT_PORT_RANGE.end)

    parts = text.split("-")
    if len(parts) != 2:
        raise ValueError("無効なポート範囲形式です。正しい形式: start-end (例: 8000-9999)")

    try:
        start = _atoi(parts[0].strip())
    except ValueError:
        raise ValueError(f"開始ポートが無効です: {parts[0]}") from None
    try:
        end = _atoi(parts[1].strip())
    except ValueError:
        raise ValueError(f"終了ポートが無効です: {parts[1]}") from None

    if not 1 <= start <= 65535:
        raise ValueError(f"開始ポートは1-65535の範囲で指定してください: {start}")
    if not 1 <= end <= 65535:
        raise ValueError(f"終了ポートは1-65535の範囲で指定してください: {end}")
    if start > end:
        raise ValueError(f"開始ポートが終了ポートより大きいです: {start} > {end}")
    return PortRange(start=start, end=end)


def create_port_config(text: str) -> PortConfig:
    """Port settings for the given range text, with no reserved ports and privileged ports excluded."""
    return PortConfig(range=parse_port_range(text), reserved=[], exclude_privileged=True)


# --- project name -----------------------------------------------------------


def detect_worktree_project_name() -> str:
    """Project name from the git top level; inside a worktree subdirectory "current_top"."""
    current = os.getcwd()
    completed = subprocess.run(
        ["git", "rev-parse", "--show-toplevel"],
        capture_output=True,
        text=True,
        check=True,
    )
    top_level = completed.stdout.strip()
    if not top_level:
        return ""
    top_base = os.path.basename(top_level)
    if current != top_level:
        return f"{os.path.basename(current)}_{top_base}"
    return top_base


# --- compose helpers --------------------------------------------------------


def compose_subnets(config: ComposeConfig) -> dict[str, str]:
    """The first non-empty subnet configured for each network."""
    result: dict[str, str] = {}
    for name, network in config.networks.items():
        subnet = next((entry.subnet for entry in network.ipam.config if entry.subnet), None)
        if subnet is not None:
            result[name] = subnet
    return result


def service_network_ips(config: ComposeConfig, network_name: str) -> dict[str, str]:
    """Fixed IPv4 addresses of the services attached to the network."""
    result: dict[str, str] = {}
    for name, service in config.services.items():
        attachment = service.networks.get(network_name)
        if attachment is not None and attachment.ipv4_address:
            result[name] = attachment.ipv4_address
    return result


# --- settings ---------------------------------------------------------------

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_MICROSECONDS = {
    "ns": 0.001,
    "us": 1,
    "µs": 1,
    "μs": 1,
    "ms": 1_000,
    "s": 1_000_000,
    "m": 60_000_000,
    "h": 3_600_000_000,
}


def _parse_duration(text: str) -> timedelta:
    """Parse a duration such as "1m30s" or "250ms"."""
    body = text.strip()
    sign = 1
    if body[:1] in "+-" and body:
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"invalid duration: {text!r}")
    total = 0.0
    position = 0
    while position < len(body):
        match = _DURATION_PART.match(body, position)
        if match is None:
            raise ValueError(f"invalid duration: {text!r}")
        total += float(match.group(1)) * _MICROSECONDS[match.group(2)]
        position = match.end()
    return timedelta(microseconds=sign * total)


def _convert(current: Any, value: Any, where: str) -> Any:
    if dataclasses.is_dataclass(current) and not isinstance(current, type):
        if not isinstance(value, dict):
            raise ValueError(f"{where}: expected a mapping")
        _merge(current, value, where)
        return current
    if isinstance(current, timedelta):
        if isinstance(value, bool):
            raise ValueError(f"{where}: expected a duration")
        if isinstance(value, int):
            return timedelta(microseconds=value / 1000)
        if isinstance(value, str):
            return _parse_duration(value)
        raise ValueError(f"{where}: expected a duration")
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
            return value.lower() in ("true", "1")
        if isinstance(value, int):
            return value != 0
        raise ValueError(f"{where}: expected a boolean")
    if isinstance(current, int):
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            return _atoi(value.strip())
        raise ValueError(f"{where}: expected an integer")
    if isinstance(current, str):
        if isinstance(value, (dict, list)):
            raise ValueError(f"{where}: expected a string")
        return "" if value is None else str(value)
    if isinstance(current, list):
        if not isinstance(value, list):
            raise ValueError(f"{where}: expected a list")
        return [_convert(0, item, where) for item in value]
    return value


def _merge(target: Any, data: dict[Any, Any], where: str = "") -> None:
    keys = {str(key).lower(): value for key, value in data.items()}
    for field in dataclasses.fields(target):
        squashed = field.name.replace("_", "").lower()
        if squashed not in keys:
            continue
        path = f"{where}.{field.name}" if where else field.name
        current = getattr(target, field.name)
        setattr(target, field.name, _convert(current, keys[squashed], path))


def _find_settings_file(config_file: str | None) -> str | None:
    if config_file:
        return config_file
    for directory in (os.path.expanduser("~"), "."):
        for name in _SETTINGS_NAMES:
            path = os.path.join(directory, name)
            if os.path.isfile(path):
                return path
    return None


def load_settings(config_file: str | None, verbose: bool) -> AppConfig:
    """Defaults merged with the settings file; verbose forces the debug log level."""
    settings = default_config()
    path = _find_settings_file(config_file)
    data: Any = None
    if path is not None:
        try:
            with open(path, encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except (OSError, yaml.YAMLError):
            data = None
        else:
            if verbose:
                print("設定ファイルを使用中:", path, file=sys.stderr)

    if isinstance(data, dict):
        try:
            _merge(settings, data)
        except ValueError as exc:
            print(f"設定の読み込みに失敗しました: {exc}", file=sys.stderr)
            return settings
    elif data is not None:
        print("設定の読み込みに失敗しました: 設定はマッピングではありません", file=sys.stderr)
        return settings

    if verbose:
        settings.log.level = "debug"
    return settings


def _make_logger(settings: AppConfig, detail: bool) -> Logger:
    try:
        return LoggerFactory(detail).create(settings.log)
    except _FAILURES as exc:
        raise CommandError(f"ロガーの初期化に失敗しました: {exc}") from exc


# --- commands ---------------------------------------------------------------


def _run_clean(args: argparse.Namespace, extra: list[str]) -> None:
    logger = _make_logger(load_settings(args.config, args.verbose), args.detail)
    logger.info("gopose clean コマンドを開始しています")
    print("生成されたファイルのクリーンアップを実行中...")
    print("現在は実装中です。")


def _run_status(args: argparse.Namespace, extra: list[str]) -> None:
    logger = _make_logger(load_settings(args.config, args.verbose), args.detail)
    logger.info("gopose status コマンドを開始しています")
    print("現在の状態を確認中...")
    print("現在は実装中です。")


def _step(message: str):
    """Context manager turning failures into a CommandError with the given prefix."""

    class _Step:
        def __enter__(self) -> None:
            return None

        def __exit__(self, kind, exc, tb) -> bool:
            if exc is not None and isinstance(exc, _FAILURES):
                raise CommandError(f"{message}: {exc}") from exc
            return False

    return _Step()


def _run_up(args: argparse.Namespace, extra: list[str]) -> None:
    logger = _make_logger(load_settings(args.config, args.verbose), args.detail)

    with _step("ポート範囲の解析に失敗しました"):
        port_config = create_port_config(args.port_range)

    project_name = args.project_name
    if not project_name and not os.environ.get("COMPOSE_PROJECT_NAME"):
        try:
            detected = detect_worktree_project_name()
        except (OSError, subprocess.SubprocessError):
            detected = ""
        if detected:
            project_name = detected
            logger.info("ワークツリー名をプロジェクト名として使用", project_name=project_name)

    file_path = args.file
    output_file = args.output
    logger.info(
        "ポート衝突解決を開始",
        dry_run=args.dry_run,
        compose_file=file_path,
        output_file=output_file,
        project_name=project_name,
        strategy=args.strategy,
        port_range=f"{port_config.range.start}-{port_config.range.end}",
    )

    if file_path in ("", DEFAULT_COMPOSE_FILE):
        with _step("作業ディレクトリの取得に失敗"):
            directory = os.getcwd()
        with _step("Docker Composeファイルの自動検出に失敗"):
            file_path = ComposeFileDetector(logger).get_default_compose_file(directory)
        logger.info("Docker Composeファイルを自動検出", file=file_path)

    with _step("Docker Composeファイルの解析に失敗"):
        config = ComposeParser(logger).parse_compose_file(file_path)

    port_detector = NetstatPortDetector(logger)
    port_allocator = PortAllocator(port_detector, logger)
    detector = UnifiedConflictDetector(port_detector, DockerNetworkDetector(logger), logger)

    with _step("衝突検知に失敗"):
        conflict_info = detector.detect_conflicts(config, project_name)

    if not conflict_info.has_conflicts():
        logger.info("衝突は検出されませんでした")
        if args.skip_compose_up:
            logger.warn(_SKIP_COMPOSE_UP_WARNING)
        return

    logger.info(
        "衝突検知完了",
        port_conflicts=len(conflict_info.port_conflicts),
        network_conflicts=len(conflict_info.network_conflicts),
    )

    strategy = ResolutionStrategy(_STRATEGIES.get(args.strategy, "auto_increment"))
    generator = UnifiedOverrideGenerator(port_allocator, logger)
    with _step("衝突解決に失敗"):
        generator.resolve_conflicts(conflict_info, strategy, port_config)

    for conflict in conflict_info.port_conflicts:
        if conflict.resolution is not None:
            logger.info(
                "ポート解決",
                service=conflict.service_name,
                to=conflict.resolution.resolved_port,
                reason=conflict.resolution.reason,
                **{"from": conflict.port},
            )
    for conflict in conflict_info.network_conflicts:
        if conflict.resolution is not None:
            logger.info(
                "ネットワーク解決",
                network=conflict.network_name,
                to=conflict.resolution.resolved_subnet,
                reason=conflict.resolution.reason,
                **{"from": conflict.original_subnet},
            )

    with _step("Overrideファイルの生成に失敗"):
        override = generator.generate_from_conflicts(config, conflict_info)

    if project_name:
        override.name = project_name
        logger.debug("Override.ymlにプロジェクト名を設定", project_name=project_name)

    override_generator = OverrideGenerator(logger)
    with _step("Overrideファイルの検証に失敗"):
        override_generator.validate_override(override)

    if not output_file:
        output_file = DEFAULT_OUTPUT_FILE

    if not args.dry_run:
        with _step("Overrideファイルの書き込みに失敗"):
            override_generator.write_override_file(override, output_file)
        logger.info("Override.ymlファイルが生成されました", output_file=output_file)
    else:
        logger.info("ドライランモードのため、ファイルは生成されません")

    if args.skip_compose_up:
        logger.warn(_SKIP_COMPOSE_UP_WARNING)

    if not args.dry_run:
        logger.info(
            "override.ymlの生成が完了しました。docker compose upを実行する場合は、手動で実行してください。"
        )


# --- argument parsing -------------------------------------------------------


def _add_global_flags(parser: argparse.ArgumentParser, suppress: bool) -> None:
    def default(value: Any) -> Any:
        return argparse.SUPPRESS if suppress else value

    parser.add_argument("--config", default=default(None),
                        help="設定ファイルのパス (デフォルト: $HOME/.gopose.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", default=default(False),
                        help="詳細ログ出力")
    parser.add_argument("--detail", action="store_true", default=default(False),
                        help="ログの詳細情報を表示")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gopose",
        description="Docker Compose ポート衝突自動解決ツール",
        allow_abbrev=False,
    )
    _add_global_flags(parser, suppress=False)
    parser.set_defaults(command=None)

    common = argparse.ArgumentParser(add_help=False, allow_abbrev=False)
    _add_global_flags(common, suppress=True)

    commands = parser.add_subparsers(title="commands")

    up = commands.add_parser(
        "up", parents=[common], allow_abbrev=False,
        help="ポート衝突・ネットワーク衝突を解決してDocker Composeを起動",
    )
    up.set_defaults(command="up", handler=_run_up)
    up.add_argument("--port-range", default="", help="利用するポート範囲 (例: 8000-9999)")
    up.add_argument("--strategy", default="auto", help="解決戦略 (auto, range, user)")
    up.add_argument("-o", "--output", default="",
                    help="出力ファイル名 (デフォルト: docker-compose.override.yml)")
    up.add_argument("--dry-run", action="store_true",
                    help="ドライラン（override.yml生成のみ、Docker Composeは実行しない）")
    up.add_argument("--skip-compose-up", action="store_true",
                    help="[非推奨] このオプションは不要になりました。")
    up.add_argument("-f", "--file", default=DEFAULT_COMPOSE_FILE,
                    help="Docker Composeファイルのパス")
    up.add_argument("-p", "--project-name", default="", help="Docker Composeプロジェクト名")
    up.add_argument("-d", "--detach", action="store_true",
                    help="Detached mode: バックグラウンドでサービスを実行")
    up.add_argument("--build", action="store_true", help="サービス起動前にイメージをビルド")
    up.add_argument("--force-recreate", action="store_true",
                    help="設定が変更されていなくてもコンテナを再作成")
    up.add_argument("--no-deps", action="store_true", help="リンクされたサービスを起動しない")
    up.add_argument("--remove-orphans", action="store_true",
                    help="Composeファイルで定義されていないサービスのコンテナを削除")
    up.add_argument("--scale", default="", help="サービスの起動数を指定 (例: web=3,db=1)")
    up.add_argument("--env-file", action="append", default=[], help="環境変数ファイルを指定")
    up.add_argument("--abort-on-container-exit", action="store_true",
                    help="いずれかのコンテナが停止したときに全てのコンテナを停止")
    up.add_argument("--exit-code-from", default="", help="指定されたサービスの終了コードを返す")
    up.add_argument("--timeout", type=_parse_duration, default=timedelta(0),
                    help="コンテナの停止タイムアウト")

    clean = commands.add_parser(
        "clean", parents=[common], allow_abbrev=False,
        help="生成されたoverride.ymlファイルを削除",
    )
    clean.set_defaults(command="clean", handler=_run_clean)
    clean.add_argument("--force", action="store_true", help="確認なしで強制削除")
    clean.add_argument("--all", action="store_true", help="すべての関連ファイルを削除")

    status = commands.add_parser(
        "status", parents=[common], allow_abbrev=False, help="現在の状態確認",
    )
    status.set_defaults(command="status", handler=_run_status)
    status.add_argument("-o", "--output", default="text", help="出力形式 (text, json, yaml)")
    status.add_argument("--detailed", action="store_true", help="詳細情報を表示")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line; returns the process exit status."""
    parser = _build_parser()
    args, extra = parser.parse_known_args(argv)
    if extra and args.command != "up":
        parser.error(f"unrecognized arguments: {' '.join(extra)}")
    if args.command is None:
        parser.print_help()
        return 0
    try:
        args.handler(args, extra)
    except CommandError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())