"""
Unit tests for config.json persistence and the configuration models.
"""

import json
import stat

import pytest
from pydantic import ValidationError

from core.config_store import ConfigStore, ConfigStoreError
from models.certificate import BindRule, CertificateConfig, ValidationMethod
from models.config import AgentConfig


@pytest.fixture
def config_store(tmp_path, encryption):
    return ConfigStore(tmp_path / "data" / "config.json", encryption)


class TestAgentConfigModel:
    """Validation rules on the persisted configuration."""

    def test_defaults(self):
        config = AgentConfig()
        assert config.renew_days_local == 15
        assert config.renew_days_fetch == 13
        assert config.check_interval == 6
        assert config.legacy_binding_mode is None

    def test_local_must_exceed_fetch(self):
        with pytest.raises(ValidationError, match="must be greater than"):
            AgentConfig(renew_days_local=10, renew_days_fetch=10)

    def test_enabled_certificates(self):
        config = AgentConfig(
            certificates=[
                CertificateConfig(domain="a.example.com", auto_bind_mode=True),
                CertificateConfig(domain="b.example.com", enabled=False),
            ]
        )
        assert [c.domain for c in config.enabled_certificates()] == ["a.example.com"]


class TestCertificateConfigModel:
    def test_normalization(self):
        cfg = CertificateConfig(
            domain=" Example.COM ",
            domains=["Example.com", " WWW.example.com", ""],
            bind_rules=[BindRule(domain="WWW.Example.com", port=0)],
            validation_method="",
        )
        assert cfg.domain == "example.com"
        assert cfg.all_domains() == ["example.com", "www.example.com"]
        assert cfg.bind_rules[0].domain == "www.example.com"
        assert cfg.bind_rules[0].port == 443
        assert cfg.validation_method is None

    def test_validation_method_parsed(self):
        cfg = CertificateConfig(domain="example.com", validation_method="delegation")
        assert cfg.validation_method == ValidationMethod.DELEGATION

    def test_expiry_date(self):
        assert CertificateConfig(domain="a.com", expires_at="2030-01-31").expiry_date().isoformat() == "2030-01-31"
        assert CertificateConfig(domain="a.com", expires_at="soon").expiry_date() is None


class TestConfigStore:
    """Loading, saving and token handling."""

    def test_missing_file_gives_defaults(self, config_store):
        assert config_store.load() == AgentConfig()

    def test_save_and_load(self, config_store):
        config = AgentConfig(
            api_base_url="https://issuer.example/api/deploy",
            certificates=[CertificateConfig(order_id=3, domain="example.com", auto_bind_mode=True)],
        )
        config_store.save(config)

        assert stat.S_IMODE(config_store.path.stat().st_mode) == 0o600
        loaded = config_store.load()
        assert loaded.api_base_url == config.api_base_url
        assert loaded.certificates[0].order_id == 3

    def test_zero_thresholds_use_defaults(self, config_store):
        config_store.path.parent.mkdir(parents=True)
        config_store.path.write_text(json.dumps({"renew_days_local": 0, "renew_days_fetch": 0, "check_interval": 0}))

        config = config_store.load()
        assert (config.renew_days_local, config.renew_days_fetch, config.check_interval) == (15, 13, 6)

    def test_inverted_thresholds_rejected(self, config_store):
        config_store.path.parent.mkdir(parents=True)
        config_store.path.write_text(json.dumps({"renew_days_local": 10, "renew_days_fetch": 20}))

        with pytest.raises(ConfigStoreError) as exc:
            config_store.load()
        assert "renew_days_local" in exc.value.suggestion

    def test_local_must_exceed_issuer_auto_renew_on_load(self, config_store):
        config_store.path.parent.mkdir(parents=True)
        config_store.path.write_text(json.dumps({"renew_days_local": 14, "renew_days_fetch": 10}))

        with pytest.raises(ConfigStoreError, match="auto-renew threshold \(14\)"):
            config_store.load()

    def test_local_must_exceed_issuer_auto_renew_on_save(self, config_store):
        with pytest.raises(ConfigStoreError, match="auto-renew"):
            config_store.save(AgentConfig(renew_days_local=14, renew_days_fetch=10))
        assert not config_store.path.exists()

    def test_issuer_threshold_configurable(self, tmp_path, encryption):
        store = ConfigStore(tmp_path / "config.json", encryption, remote_auto_renew_days=7)
        store.save(AgentConfig(renew_days_local=14, renew_days_fetch=10))

        assert store.load().renew_days_local == 14

    def test_write_failure(self, tmp_path, encryption):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = ConfigStore(blocker / "config.json", encryption)

        with pytest.raises(ConfigStoreError, match="Failed to write"):
            store.save(AgentConfig())

    def test_corrupt_json(self, config_store):
        config_store.path.parent.mkdir(parents=True)
        config_store.path.write_text("{")

        with pytest.raises(ConfigStoreError, match="Failed to read"):
            config_store.load()

    def test_token_encrypted_at_rest(self, config_store):
        config = AgentConfig()
        config_store.set_token(config, "super-secret-token")
        config_store.save(config)

        assert "super-secret-token" not in config_store.path.read_text()
        assert config_store.get_token(config_store.load()) == "super-secret-token"

    def test_empty_token(self, config_store):
        config = AgentConfig()
        config_store.set_token(config, "")
        assert config.encrypted_token == ""
        assert config_store.get_token(config) == ""

    def test_undecryptable_token(self, config_store):
        config = AgentConfig(encrypted_token="gAAAAAgarbage")
        with pytest.raises(ConfigStoreError, match="decrypt"):
            config_store.get_token(config)
