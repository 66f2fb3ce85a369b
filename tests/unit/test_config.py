"""Unit tests for configuration loading."""

from pathlib import Path

import pytest

from geoallow.core.config import AppConfig, GeoAllowConfig
from geoallow.core.exceptions import ConfigurationError


class TestGeoAllowConfig:
    """Tests for the configuration model."""

    def test_defaults(self):
        """Defaults should match the documented values."""
        config = GeoAllowConfig()
        assert config.min_prefixes == 100
        assert config.regression_ratio == 0.9
        assert "{cc}" in config.registry_url
        assert config.local_subnet is None
        assert config.data_dir == Path("/var/lib/geoallow")

    def test_load_yaml(self, tmp_path):
        """Values from the file should override defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("fetch_timeout: 10\nlocal_subnet: 10.0.0.0/8\n")
        config = GeoAllowConfig.load(path)
        assert config.fetch_timeout == 10
        assert config.local_subnet == "10.0.0.0/8"

    def test_missing_file_uses_defaults(self, tmp_path):
        """load_or_default should not require a file."""
        config = GeoAllowConfig.load_or_default(tmp_path / "missing.yaml")
        assert config == GeoAllowConfig()

    def test_missing_file_load(self, tmp_path):
        """load() on a missing file is a configuration error."""
        with pytest.raises(ConfigurationError):
            GeoAllowConfig.load(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        """Broken YAML should raise ConfigurationError."""
        path = tmp_path / "config.yaml"
        path.write_text("fetch_timeout: [1\n")
        with pytest.raises(ConfigurationError):
            GeoAllowConfig.load(path)

    @pytest.mark.parametrize("content", [
        "regression_ratio: 1.5\n",
        "regression_ratio: 0\n",
        "fetch_workers: 0\n",
        "min_prefixes: -1\n",
        "local_subnet: not-a-subnet\n",
        "registry_url: https://example.org/data.json\n",
    ])
    def test_invalid_values(self, tmp_path, content):
        """Out-of-range values should raise ConfigurationError."""
        path = tmp_path / "config.yaml"
        path.write_text(content)
        with pytest.raises(ConfigurationError):
            GeoAllowConfig.load(path)


class TestAppConfig:
    """Tests for AppConfig paths and environment overrides."""

    def test_derived_paths(self, tmp_path):
        """Lists and snapshot live under the data directory."""
        app = AppConfig(config=GeoAllowConfig(data_dir=tmp_path))
        assert app.lists_dir == tmp_path / "lists"
        assert app.snapshot_path == tmp_path / "snapshot.dump"

    def test_environment_override(self, tmp_path, monkeypatch):
        """GEOALLOW_DATA_DIR should override the file value."""
        monkeypatch.setenv("GEOALLOW_DATA_DIR", str(tmp_path / "env"))
        app = AppConfig(config=GeoAllowConfig(data_dir=tmp_path / "file"))
        assert app.config.data_dir == tmp_path / "env"

    def test_invalid_environment_override(self, monkeypatch):
        """A bad override is a configuration error."""
        monkeypatch.setenv("GEOALLOW_REGISTRY_URL", "ftp://mirror/data.json")
        with pytest.raises(ConfigurationError):
            AppConfig(config=GeoAllowConfig())
