"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from storectl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.instance_root == Path("/srv/storefront")
    assert config.registry_dir == Path("/var/lib/storectl/registry")
    assert config.cache_dir == Path("/var/lib/storectl/cache")
    assert config.templates_dir == Path("/etc/storectl/templates")
    assert config.backups.root == Path("/var/backups/storectl")
    assert config.backups.index == Path("/var/backups/storectl/backups.json")
    assert config.release.owner == "davidtres03"
    assert config.release.asset_patterns[0] == "EcommerceStarter-Installer-v*.zip"
    assert config.upgrade.min_version == "0.9.0"
    assert config.upgrade.protected_paths == ("logs", "uploads")
    assert config.upgrade.progress_interval == 0.25


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "storectl.yml"
    cfg.write_text(
        "instance_root: /opt/shops\n"
        "release:\n"
        "  repo: StoreFork\n"
        "  asset_patterns:\n"
        "    - StoreFork-*.zip\n"
        "upgrade:\n"
        "  breaking_versions: ['2.0.0', '3.0.0']\n"
        "backups:\n"
        f"  root: {tmp_path / 'backups'}\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.instance_root == Path("/opt/shops")
    assert config.release.repo == "StoreFork"
    assert config.release.asset_patterns == ("StoreFork-*.zip",)
    assert config.upgrade.breaking_versions == ("2.0.0", "3.0.0")
    assert config.backups.root == tmp_path / "backups"
    assert config.backups.index == tmp_path / "backups" / "backups.json"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "storectl.yml"
    cfg.write_text("lock_timeout: 10\n")
    state_dir = tmp_path / "state"
    env = {
        "STORECTL_STATE_DIR": str(state_dir),
        "STORECTL_LOCK_TIMEOUT": "45",
        "STORECTL_RELEASE__TOKEN": "ghp_example",
        "STORECTL_SYSTEMD__START_TIMEOUT": "90",
        "STORECTL_BACKUPS__ROOT": str(tmp_path / "bk"),
    }

    config = load_config(config_file=cfg, env=env)

    assert config.state_dir == state_dir
    assert config.registry_dir == state_dir / "registry"
    assert config.lock_timeout == 45.0
    assert config.release.token == "ghp_example"
    assert config.systemd.start_timeout == 90.0
    assert config.backups.index == tmp_path / "bk" / "backups.json"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    env = {"STORECTL_LOCK_TIMEOUT": "45"}

    config = load_config(config_file=tmp_path / "none.yml", env=env, overrides={"lock_timeout": 5})

    assert config.lock_timeout == 5.0


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("base_port: 6100\n")

    config = load_config(env={"STORECTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.base_port == 6100


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A YAML document that is not a mapping raises ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_nested_key_raises(tmp_path: Path) -> None:
    """Extra keys inside a section produce ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("nginx:\n  extra: true\n")

    with pytest.raises(ConfigError, match="Unknown nginx configuration keys"):
        load_config(config_file=cfg, env={})


def test_empty_asset_patterns_raise(tmp_path: Path) -> None:
    """At least one release asset pattern is required."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("release:\n  asset_patterns: []\n")

    with pytest.raises(ConfigError, match="asset_patterns"):
        load_config(config_file=cfg, env={})


def test_invalid_base_port_raises(tmp_path: Path) -> None:
    """Out-of-range ports are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("base_port: 70000\n")

    with pytest.raises(ConfigError, match="base_port"):
        load_config(config_file=cfg, env={})


def test_env_lists_are_comma_separated(tmp_path: Path) -> None:
    """List settings accept a comma separated environment value."""
    env = {
        "STORECTL_UPGRADE__PROTECTED_PATHS": "uploads, logs,keys",
        "STORECTL_RELEASE__API_URL": "https://git.example.test/api/",
    }

    config = load_config(config_file=tmp_path / "none.yml", env=env)

    assert config.upgrade.protected_paths == ("uploads", "logs", "keys")
    assert config.release.api_url == "https://git.example.test/api"


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("lock_timeout: 0\n", "lock_timeout"),
        ("systemd:\n  start_timeout: soon\n", "systemd.start_timeout"),
        ("upgrade:\n  progress_interval: true\n", "upgrade.progress_interval"),
        ("release: [1, 2]\n", "release"),
        ("base_port: eighty\n", "base_port"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, match: str) -> None:
    """Values of the wrong type or range are rejected with their key."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=match):
        load_config(config_file=cfg, env={})


def test_conflicting_env_variables_raise(tmp_path: Path) -> None:
    """A section cannot be set both as a scalar and as a mapping."""
    env = {"STORECTL_NGINX": "off", "STORECTL_NGINX__NGINX_BIN": "/usr/sbin/nginx"}

    with pytest.raises(ConfigError):
        load_config(config_file=tmp_path / "none.yml", env=env)
