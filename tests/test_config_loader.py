"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from sitectl.config import (
    AppConfig,
    BasePathError,
    ConfigError,
    load_config,
    resolve_base_path,
    write_base_pointer,
)


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.base_path is None
    assert config.base_pointer == Path("~/.sitectl_base").expanduser()
    assert config.nginx.sites_available == Path("/etc/nginx/sites-available")
    assert config.nginx.sites_enabled == Path("/etc/nginx/sites-enabled")
    assert config.nginx.use_sudo is True
    assert config.systemd.unit == "nginx"
    assert config.hosts.path == Path("/etc/hosts")
    assert config.hosts.marker == "Added by FastNginx"
    assert config.backend_host == "127.0.0.1"
    assert config.lock_timeout == 30.0


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "sitectl.yml"
    cfg.write_text(
        f"base_path: {tmp_path / 'base'}\n"
        "lock_timeout: 5\n"
        "nginx:\n"
        f"  sites_available: {tmp_path / 'avail'}\n"
        "  use_sudo: false\n"
        "hosts:\n"
        "  marker: Managed by sitectl\n"
        "defaults:\n"
        "  backend_host: 10.0.0.2\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.base_path == tmp_path / "base"
    assert config.lock_timeout == 5.0
    assert config.nginx.sites_available == tmp_path / "avail"
    assert config.nginx.use_sudo is False
    assert config.hosts.marker == "Managed by sitectl"
    assert config.backend_host == "10.0.0.2"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "sitectl.yml"
    cfg.write_text("lock_timeout: 5\nnginx:\n  use_sudo: true\n", encoding="utf-8")
    env = {
        "SITECTL_LOCK_TIMEOUT": "45",
        "SITECTL_NGINX__USE_SUDO": "false",
        "SITECTL_HOSTS__PATH": str(tmp_path / "hosts"),
        "SITECTL_BASE_POINTER": str(tmp_path / "pointer"),
        "UNRELATED": "ignored",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.lock_timeout == 45.0
    assert config.nginx.use_sudo is False
    assert config.hosts.path == tmp_path / "hosts"
    assert config.base_pointer == tmp_path / "pointer"


def test_overrides_win_over_env(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"SITECTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 2},
    )

    assert config.lock_timeout == 2.0


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("systemd:\n  unit: openresty\n", encoding="utf-8")

    config = load_config(env={"SITECTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.systemd.unit == "openresty"


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A non-mapping YAML document raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Extra keys inside a section produce ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("hosts:\n  extra: true\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown hosts configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize("value", ["0", "-1", "soon"])
def test_invalid_lock_timeout_raises(tmp_path: Path, value: str) -> None:
    """Lock timeouts must be positive numbers."""
    with pytest.raises(ConfigError):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"SITECTL_LOCK_TIMEOUT": value},
        )


def test_base_path_resolves_from_pointer(tmp_path: Path) -> None:
    """Without base_path the first line of the pointer file is used."""
    base = tmp_path / "store"
    base.mkdir()
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"SITECTL_BASE_POINTER": str(tmp_path / "pointer")},
    )

    with pytest.raises(BasePathError):
        resolve_base_path(config)

    write_base_pointer(config, base)

    assert resolve_base_path(config) == base
    assert config.data_dir == base / "nginx_data"
    assert config.index_file == base / "nginx_data" / "config_index"


def test_base_path_must_exist(tmp_path: Path) -> None:
    """A configured storage root that does not exist is an environment error."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"SITECTL_BASE_PATH": str(tmp_path / "absent")},
    )

    with pytest.raises(BasePathError, match="not found"):
        resolve_base_path(config)
