"""Tests for the configuration loader."""
from __future__ import annotations

from pathlib import Path

import pytest

from conftest import PROJECT_ID, PROJECT_TOKEN
from corectl.config import ConfigError, decode_project_token, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults load when no config file is present."""
    missing = tmp_path / "missing.yml"
    config = load_config(config_file=missing, env={})

    assert config.config_file == missing
    assert config.cloud.base_url == "https://cloud-api.calyptia.com"
    assert config.cloud.token is None
    assert config.cloud.project_id is None
    assert config.versions.default_tag == "v2.14.0"
    assert config.images.to_cloud == "ghcr.io/calyptia/core-operator/sync-to-cloud"
    assert config.wait.timeout == 30.0
    assert config.kubernetes.namespace is None


def test_load_config_file_values(tmp_path: Path) -> None:
    """Values from the YAML file override the defaults."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "cloud:\n"
        "  base_url: https://cloud.example.test/\n"
        "  project_id: explicit-project\n"
        "versions:\n"
        "  default_tag: v2.15.1\n"
        f"  cache_file: {tmp_path / 'index.json'}\n"
        "kubernetes:\n"
        "  namespace: calyptia\n"
        "wait:\n"
        "  timeout: 90\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.cloud.base_url == "https://cloud.example.test"
    assert config.cloud.project_id == "explicit-project"
    assert config.versions.default_tag == "v2.15.1"
    assert config.versions.cache_file == tmp_path / "index.json"
    assert config.kubernetes.namespace == "calyptia"
    assert config.wait.timeout == 90.0


def test_env_overrides_file_values(tmp_path: Path) -> None:
    """Environment variables win over the file and nest on double underscores."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("wait:\n  timeout: 10\n  poll_interval: 1\n")
    env = {
        "CORECTL_WAIT__TIMEOUT": "45",
        "CORECTL_CLOUD__VERIFY_TLS": "false",
        "CORECTL_LOGS_DIR": str(tmp_path / "logs"),
        "UNRELATED": "ignored",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.wait.timeout == 45.0
    assert config.wait.poll_interval == 1.0
    assert config.cloud.verify_tls is False
    assert config.logs_dir == tmp_path / "logs"


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """CORECTL_CONFIG_FILE selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("images:\n  to_cloud: registry.example.test/to-cloud\n")

    config = load_config(env={"CORECTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.images.to_cloud == "registry.example.test/to-cloud"
    assert config.images.from_cloud == "ghcr.io/calyptia/core-operator/sync-from-cloud"


def test_programmatic_overrides_win(tmp_path: Path) -> None:
    """Overrides passed by the CLI beat every other source."""
    env = {"CORECTL_CLOUD__BASE_URL": "https://env.example.test"}

    config = load_config(
        config_file=tmp_path / "missing.yml",
        env=env,
        overrides={"cloud": {"base_url": "https://flag.example.test"}},
    )

    assert config.cloud.base_url == "https://flag.example.test"


def test_project_id_is_recovered_from_token(tmp_path: Path) -> None:
    """A token without an explicit project ID supplies one."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"CORECTL_CLOUD__TOKEN": PROJECT_TOKEN},
    )

    assert config.cloud.project_id == PROJECT_ID
    assert config.cloud.token == PROJECT_TOKEN


def test_token_is_masked_in_serialised_config(tmp_path: Path) -> None:
    """``to_dict`` never exposes the full token."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"CORECTL_CLOUD__TOKEN": PROJECT_TOKEN},
    )

    rendered = config.to_dict()
    cloud = rendered["cloud"]
    assert isinstance(cloud, dict)
    assert cloud["token"] != PROJECT_TOKEN
    assert cloud["token"].startswith(PROJECT_TOKEN[:4])
    assert rendered["config_file"] == str(tmp_path / "missing.yml")


@pytest.mark.parametrize(
    "token",
    ["no-dot", "a.b.c", "!!!.sig", "e30.sig"],
)
def test_decode_project_token_rejects_malformed_tokens(token: str) -> None:
    """Tokens that do not carry a ProjectID claim are refused."""
    with pytest.raises(ConfigError, match="invalid project token"):
        decode_project_token(token)


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


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Extra keys inside a section are reported with the section name."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("kubernetes:\n  cluster: prod\n")

    with pytest.raises(ConfigError, match="Unknown kubernetes configuration keys: cluster"):
        load_config(config_file=cfg, env={})


def test_base_url_must_be_http(tmp_path: Path) -> None:
    """A base URL without an http(s) scheme is refused."""
    with pytest.raises(ConfigError, match="cloud.base_url"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"CORECTL_CLOUD__BASE_URL": "ftp://cloud.example.test"},
        )


def test_non_positive_wait_timeout_raises(tmp_path: Path) -> None:
    """Wait bounds must be positive numbers."""
    with pytest.raises(ConfigError, match="wait.timeout must be greater than zero"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"CORECTL_WAIT__TIMEOUT": "0"},
        )
