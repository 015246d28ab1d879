"""
Unit tests for input validation helpers.
"""

import os

import pytest

from core.validation import (
    ConfigurationError,
    PathSecurityError,
    ensure_resolved_within,
    is_ip_address,
    is_valid_domain,
    matches_domain,
    normalize_domain,
    resolve_within,
    validate_binding_host,
    validate_certificate_config,
    validate_friendly_name,
    validate_thumbprint,
    wildcard_name,
)
from models.certificate import BindRule, CertificateConfig, ValidationMethod


class TestDomains:
    """Domain syntax and matching."""

    @pytest.mark.parametrize("domain", ["example.com", "*.example.com", "a-b.example.co.uk", "Example.COM."])
    def test_valid(self, domain):
        assert is_valid_domain(domain)

    @pytest.mark.parametrize("domain", ["", "localhost", "-bad.example.com", "a..b.com", "exa mple.com", "a;b.com"])
    def test_invalid(self, domain):
        assert not is_valid_domain(domain)

    def test_punycode(self):
        assert normalize_domain("bücher.example") == "xn--bcher-kva.example"
        assert normalize_domain("*.Bücher.example") == "*.xn--bcher-kva.example"

    def test_ip_addresses(self):
        assert is_ip_address("203.0.113.5")
        assert is_ip_address("[2001:db8::1]")
        assert not is_ip_address("example.com")

    def test_wildcard_covers_one_label(self):
        assert matches_domain("www.example.com", "*.example.com")
        assert not matches_domain("example.com", "*.example.com")
        assert not matches_domain("a.b.example.com", "*.example.com")

    def test_exact_match_case_insensitive(self):
        assert matches_domain("WWW.example.com", "www.example.com")


class TestCommandArguments:
    """Values that end up on netsh and PowerShell command lines."""

    def test_thumbprint_normalized(self):
        raw = "AB:CD " + "0" * 36
        assert validate_thumbprint(raw) == "abcd" + "0" * 36

    def test_thumbprint_rejects_garbage(self):
        with pytest.raises(ConfigurationError):
            validate_thumbprint("abc; rm -rf /")

    def test_binding_host_rejects_metacharacters(self):
        with pytest.raises(ConfigurationError):
            validate_binding_host("example.com & calc")

    def test_binding_host_accepts_any_address(self):
        assert validate_binding_host("0.0.0.0") == "0.0.0.0"

    @pytest.mark.parametrize("name", ["", "a'b", "x; y", "a\nb", "c:\\path"])
    def test_friendly_name_rejected(self, name):
        with pytest.raises(ConfigurationError):
            validate_friendly_name(name)


class TestCertificateConfigValidation:
    """Pre-flight checks on configured certificates."""

    def test_wildcard_with_file_validation_rejected(self):
        cfg = CertificateConfig(
            domain="*.example.com", validation_method=ValidationMethod.FILE, auto_bind_mode=True
        )
        with pytest.raises(ConfigurationError, match="wildcard domains do not support file validation"):
            validate_certificate_config(cfg)

    def test_wildcard_san_with_file_validation_rejected(self):
        cfg = CertificateConfig(
            domain="example.com", domains=["*.example.com"], validation_method="file", auto_bind_mode=True
        )
        with pytest.raises(ConfigurationError):
            validate_certificate_config(cfg)

    def test_ip_with_delegation_rejected(self):
        cfg = CertificateConfig(domain="203.0.113.5", validation_method="delegation", auto_bind_mode=True)
        with pytest.raises(ConfigurationError, match="IP addresses do not support delegation"):
            validate_certificate_config(cfg)

    def test_unset_method_accepted(self):
        cfg = CertificateConfig(domain="*.example.com", validation_method="", auto_bind_mode=True)
        validate_certificate_config(cfg)

    def test_no_targets_rejected(self):
        with pytest.raises(ConfigurationError, match="no bind rules"):
            validate_certificate_config(CertificateConfig(domain="example.com"))

    def test_invalid_bind_rule_rejected(self):
        cfg = CertificateConfig(domain="example.com", bind_rules=[BindRule(domain="bad host")])
        with pytest.raises(ConfigurationError):
            validate_certificate_config(cfg)


class TestWildcardName:
    @pytest.mark.parametrize(
        "domain,expected",
        [
            ("www.example.com", "*.example.com"),
            ("example.com", "*.example.com"),
            ("a.b.example.com", "*.b.example.com"),
            ("*.example.com", "*.example.com"),
        ],
    )
    def test_mapping(self, domain, expected):
        assert wildcard_name(domain) == expected


class TestResolveWithin:
    """Path containment under a site root."""

    def test_relative_path_resolved(self, tmp_path):
        target = resolve_within(tmp_path, ".well-known/pki-validation/abc.txt")
        assert target == tmp_path.absolute() / ".well-known" / "pki-validation" / "abc.txt"

    @pytest.mark.parametrize("path", ["../x.txt", ".well-known/../../x", "", "/", "/etc/passwd", "C:/x.txt"])
    def test_rejected(self, tmp_path, path):
        with pytest.raises(PathSecurityError):
            resolve_within(tmp_path, path)

    def test_symlink_escape_rejected(self, tmp_path):
        root = tmp_path / "site"
        outside = tmp_path / "outside"
        root.mkdir()
        outside.mkdir()
        os.symlink(outside, root / ".well-known")

        with pytest.raises(PathSecurityError, match="symlink"):
            resolve_within(root, ".well-known/abc.txt")

    def test_ensure_resolved_within(self, tmp_path):
        root = tmp_path / "site"
        root.mkdir()
        inside = root / "a.txt"
        inside.write_text("x")
        outside = tmp_path / "b.txt"
        outside.write_text("y")

        ensure_resolved_within(inside, root)
        with pytest.raises(PathSecurityError):
            ensure_resolved_within(outside, root)
