"""
Tests for configuration loading: defaults < file < environment < flags.
"""

from pathlib import Path

import pytest

from utask.config import (
    CONFIG_VERSION,
    DEFAULT_BACKEND,
    DEFAULT_PROFILE,
    UtaskConfig,
    default_config_path,
    get_config_dir,
    load_config,
    load_config_file,
    save_config,
)

ENV_VARS = (
    "UTASK_HOME", "UTASK_CONFIG", "UTASK_BACKEND", "UTASK_URL",
    "UTASK_DB_PATH", "UTASK_PROFILE", "UTASK_MAX_RETRIES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("UTASK_HOME", str(tmp_path / "home"))


def _write(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


class TestPaths:

    def test_home_override(self, tmp_path):
        assert get_config_dir() == tmp_path / "home"
        assert default_config_path() == tmp_path / "home" / "config.toml"

    def test_config_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("UTASK_CONFIG", str(tmp_path / "elsewhere.toml"))
        assert default_config_path() == tmp_path / "elsewhere.toml"

    def test_default_home(self, monkeypatch):
        monkeypatch.delenv("UTASK_HOME")
        assert get_config_dir() == Path.home() / ".utask"


class TestDefaults:

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.toml")
        assert cfg.backend == DEFAULT_BACKEND
        assert cfg.profile == DEFAULT_PROFILE
        assert cfg.url == "http://localhost:2379"
        assert cfg.max_retries == 8
        assert cfg.path == tmp_path / "home" / "utask.db"
        assert cfg.source is None

    def test_is_local(self):
        assert UtaskConfig(backend="sqlite").is_local
        assert UtaskConfig(backend="memory").is_local
        assert not UtaskConfig(backend="etcd").is_local


class TestFile:

    def test_file_values(self, tmp_path):
        path = _write(tmp_path / "c.toml", """
[utask]
version = 1

[substrate]
backend = "etcd"
url = "http://etcd.internal:2379"
path = "~/tasks.db"

[ui]
profile = "work"

[store]
max_retries = 3
""")
        cfg = load_config_file(path)
        assert cfg.backend == "etcd"
        assert cfg.url == "http://etcd.internal:2379"
        assert cfg.path == Path("~/tasks.db").expanduser()
        assert cfg.profile == "work"
        assert cfg.max_retries == 3
        assert cfg.source == path

    def test_partial_file_keeps_defaults(self, tmp_path):
        path = _write(tmp_path / "c.toml", '[ui]\nprofile = "home"\n')
        cfg = load_config_file(path)
        assert cfg.profile == "home"
        assert cfg.backend == DEFAULT_BACKEND

    def test_invalid_toml(self, tmp_path):
        path = _write(tmp_path / "c.toml", "[substrate\nbackend = ")
        with pytest.raises(ValueError, match="parse config"):
            load_config_file(path)

    def test_newer_version_rejected(self, tmp_path):
        path = _write(tmp_path / "c.toml", f"[utask]\nversion = {CONFIG_VERSION + 1}\n")
        with pytest.raises(ValueError, match="newer"):
            load_config_file(path)

    @pytest.mark.parametrize("value", ['"many"', "0", "-2"])
    def test_bad_max_retries(self, tmp_path, value):
        path = _write(tmp_path / "c.toml", f"[store]\nmax_retries = {value}\n")
        with pytest.raises(ValueError, match="max_retries"):
            load_config_file(path)


class TestPrecedence:

    @pytest.fixture
    def config_file(self, tmp_path):
        return _write(tmp_path / "c.toml", """
[substrate]
backend = "etcd"
url = "http://from-file:2379"

[ui]
profile = "file-profile"
""")

    def test_env_beats_file(self, monkeypatch, config_file):
        monkeypatch.setenv("UTASK_PROFILE", "env-profile")
        monkeypatch.setenv("UTASK_MAX_RETRIES", "5")
        cfg = load_config(config_file)
        assert cfg.profile == "env-profile"
        assert cfg.max_retries == 5
        assert cfg.url == "http://from-file:2379"

    def test_overrides_beat_env(self, monkeypatch, config_file):
        monkeypatch.setenv("UTASK_PROFILE", "env-profile")
        monkeypatch.setenv("UTASK_BACKEND", "sqlite")
        cfg = load_config(config_file, profile="flag-profile", backend=None)
        assert cfg.profile == "flag-profile"
        assert cfg.backend == "sqlite"

    def test_empty_env_ignored(self, monkeypatch, config_file):
        monkeypatch.setenv("UTASK_PROFILE", "")
        assert load_config(config_file).profile == "file-profile"

    def test_config_env_selects_file(self, monkeypatch, config_file):
        monkeypatch.setenv("UTASK_CONFIG", str(config_file))
        assert load_config().backend == "etcd"

    def test_db_path_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("UTASK_DB_PATH", str(tmp_path / "x.db"))
        assert load_config(tmp_path / "absent.toml").path == tmp_path / "x.db"

    def test_blank_profile_falls_back_to_default(self, tmp_path):
        cfg = load_config(tmp_path / "absent.toml", profile="  ")
        assert cfg.profile == DEFAULT_PROFILE

    def test_bad_env_retries(self, monkeypatch, tmp_path):
        monkeypatch.setenv("UTASK_MAX_RETRIES", "lots")
        with pytest.raises(ValueError, match="UTASK_MAX_RETRIES"):
            load_config(tmp_path / "absent.toml")


class TestSave:

    def test_save_then_load(self, tmp_path):
        cfg = UtaskConfig(backend="etcd", url="http://x:2379", path=tmp_path / "t.db",
                          profile="p", max_retries=4)
        path = save_config(cfg, tmp_path / "sub" / "config.toml")
        assert path.exists()
        loaded = load_config_file(path)
        assert (loaded.backend, loaded.url, loaded.path, loaded.profile, loaded.max_retries) == (
            "etcd", "http://x:2379", tmp_path / "t.db", "p", 4,
        )
        assert loaded.version == CONFIG_VERSION
