import os
import subprocess
from datetime import timedelta
from unittest import mock

import pytest

from gopose.cli import (
    compose_subnets,
    create_port_config,
    detect_worktree_project_name,
    load_settings,
    main,
    parse_port_range,
    service_network_ips,
)
from gopose.models import (
    IPAM,
    ComposeConfig,
    IPAMConfig,
    Network,
    Service,
    ServiceNetwork,
)


def test_parse_port_range_default():
    result = parse_port_range("")
    assert (result.start, result.end) == (8000, 9999)


def test_parse_port_range_values():
    result = parse_port_range("9000-9999")
    assert (result.start, result.end) == (9000, 9999)


def test_parse_port_range_trims_spaces():
    result = parse_port_range(" 100 - 200 ")
    assert (result.start, result.end) == (100, 200)


@pytest.mark.parametrize(
    "text", ["abc", "1-2-3", "a-100", "100-b", "0-100", "100-70000", "200-100"]
)
def test_parse_port_range_rejects(text):
    with pytest.raises(ValueError):
        parse_port_range(text)


def test_create_port_config():
    config = create_port_config("9000-9100")
    assert config.range.start == 9000
    assert config.range.end == 9100
    assert config.reserved == []
    assert config.exclude_privileged is True


def _config():
    return ComposeConfig(
        services={
            "web": Service(name="web", networks={"backend": ServiceNetwork(ipv4_address="172.20.0.5")}),
            "db": Service(name="db", networks={"backend": ServiceNetwork()}),
            "cache": Service(name="cache", networks={"other": ServiceNetwork(ipv4_address="10.0.0.2")}),
        },
        networks={
            "backend": Network(ipam=IPAM(config=[IPAMConfig(subnet=""), IPAMConfig(subnet="172.20.0.0/24")])),
            "empty": Network(ipam=IPAM(config=[])),
        },
    )


def test_compose_subnets_takes_first_nonempty():
    assert compose_subnets(_config()) == {"backend": "172.20.0.0/24"}


def test_service_network_ips_only_fixed_addresses():
    assert service_network_ips(_config(), "backend") == {"web": "172.20.0.5"}
    assert service_network_ips(_config(), "missing") == {}


def _git_result(top):
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=top + "\n", stderr="")


def test_worktree_name_at_top_level(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    top = os.getcwd()
    with mock.patch("subprocess.run", return_value=_git_result(top)):
        assert detect_worktree_project_name() == os.path.basename(top)


def test_worktree_name_in_subdirectory(tmp_path, monkeypatch):
    sub = tmp_path / "feature"
    sub.mkdir()
    monkeypatch.chdir(sub)
    top = os.path.dirname(os.getcwd())
    with mock.patch("subprocess.run", return_value=_git_result(top)):
        assert detect_worktree_project_name() == "feature_" + os.path.basename(top)


def test_worktree_name_empty_output(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with mock.patch("subprocess.run", return_value=_git_result("")):
        assert detect_worktree_project_name() == ""


def test_worktree_name_git_failure(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    error = subprocess.CalledProcessError(128, ["git"])
    with mock.patch("subprocess.run", side_effect=error):
        with pytest.raises(subprocess.CalledProcessError):
            detect_worktree_project_name()


def test_load_settings_merges_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "log:\n  level: warn\nport:\n  range:\n    start: 7000\nwatcher:\n  interval: 2s\n",
        encoding="utf-8",
    )
    settings = load_settings(str(path), False)
    assert settings.log.level == "warn"
    assert settings.port.range.start == 7000
    assert settings.port.range.end == 9999
    assert settings.watcher.interval == timedelta(seconds=2)
    assert settings.log.format == "text"


def test_load_settings_verbose_forces_debug(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("log:\n  level: warn\n", encoding="utf-8")
    assert load_settings(str(path), True).log.level == "debug"


def test_load_settings_missing_file_gives_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "missing.yaml"), False)
    assert settings.log.level == "info"
    assert settings.port.reserved == [8080, 8443, 9000, 9090]


def test_main_without_command_shows_help(capsys):
    assert main([]) == 0
    assert "gopose" in capsys.readouterr().out


def test_main_clean(tmp_path, capsys):
    assert main(["clean", "--config", str(tmp_path / "none.yaml")]) == 0
    out = capsys.readouterr().out
    assert "生成されたファイルのクリーンアップを実行中..." in out
    assert "現在は実装中です。" in out


def test_main_status(tmp_path, capsys):
    assert main(["status", "-o", "json", "--config", str(tmp_path / "none.yaml")]) == 0
    assert "現在の状態を確認中..." in capsys.readouterr().out


def test_main_clean_rejects_unknown_flag():
    with pytest.raises(SystemExit):
        main(["clean", "--bogus"])


def test_main_up_bad_port_range(tmp_path, capsys):
    code = main(["up", "--port-range", "bad", "--config", str(tmp_path / "none.yaml")])
    assert code == 1
    assert "ポート範囲の解析に失敗しました" in capsys.readouterr().err


def test_main_up_without_compose_file(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    code = main(["up", "-p", "proj", "--config", str(tmp_path / "none.yaml")])
    assert code == 1
    assert "Docker Composeファイルの自動検出に失敗" in capsys.readouterr().err


def test_main_up_missing_explicit_file(tmp_path, capsys):
    missing = str(tmp_path / "other.yml")
    code = main(["up", "-p", "proj", "-f", missing, "--config", str(tmp_path / "none.yaml")])
    assert code == 1
    assert "Docker Composeファイルの解析に失敗" in capsys.readouterr().err