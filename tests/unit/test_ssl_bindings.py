"""
Unit tests for HTTP.sys SSL bindings.

netsh is replaced by an in-memory binding table (see conftest.FakeNetsh).
"""

import pytest

from core.command_runner import CommandResult
from core.ssl_bindings import (
    BindingError,
    BindingVerificationError,
    SSLBindingService,
    find_bindings_in_list,
    parse_ssl_bindings,
)
from core.validation import ConfigurationError
from models.certificate import BindingTarget

THUMBPRINT = "A1B2C3D4E5F60718293A4B5C6D7E8F9012345678"
OTHER_THUMBPRINT = "ffffffffffffffffffffffffffffffffffffffff"

ENGLISH_OUTPUT = """
SSL Certificate bindings:
-------------------------

    Hostname:port                : www.example.com:443
    Certificate Hash             : 1111111111111111111111111111111111111111
    Application ID               : {00000000-0000-0000-0000-000000000000}
    Certificate Store Name       : My

    IP:port                      : 0.0.0.0:443
    Certificate Hash             : 2222222222222222222222222222222222222222
    Application ID               : {4dc3e181-e14b-4a21-b022-59fc669b0914}
    Certificate Store Name       : MY

    Hostname:port                : api.example.com:8443
    Certificate Hash             : 3333333333333333333333333333333333333333
    Application ID               : {00000000-0000-0000-0000-000000000000}
    Certificate Store Name       : MY
"""

CHINESE_OUTPUT = """
SSL 证书绑定:
-------------------------

    主机名:端口                  : shop.example.com:443
    证书哈希                     : ABCDEFABCDEFABCDEFABCDEFABCDEFABCDEFABCD
    应用程序 ID                  : {00000000-0000-0000-0000-000000000000}
    证书存储名称                 : MY

    IP:端口                      : 203.0.113.5:443
    证书哈希                     : 1234567890123456789012345678901234567890
"""


class TestParseBindings:
    """Parsing of netsh http show sslcert output."""

    def test_english(self):
        bindings = parse_ssl_bindings(ENGLISH_OUTPUT)

        assert [b.address for b in bindings] == ["www.example.com:443", "0.0.0.0:443", "api.example.com:8443"]
        assert bindings[0].is_ip_binding is False
        assert bindings[0].cert_hash == "1" * 40
        assert bindings[0].cert_store_name == "My"
        assert bindings[1].is_ip_binding is True
        assert bindings[1].app_id == "{4dc3e181-e14b-4a21-b022-59fc669b0914}"
        assert (bindings[2].host, bindings[2].port) == ("api.example.com", 8443)

    def test_chinese_labels(self):
        bindings = parse_ssl_bindings(CHINESE_OUTPUT)

        assert len(bindings) == 2
        assert bindings[0].address == "shop.example.com:443"
        assert bindings[0].cert_hash == "abcdef" * 6 + "abcd"
        assert bindings[1].is_ip_binding is True
        assert bindings[1].host == "203.0.113.5"

    def test_empty_output(self):
        assert parse_ssl_bindings("") == []

    def test_find_bindings_skips_ip_entries(self):
        bindings = parse_ssl_bindings(ENGLISH_OUTPUT)
        found = find_bindings_in_list(bindings, ["*.example.com"])

        assert set(found) == {"www.example.com", "api.example.com"}

    def test_find_bindings_exact_domains(self):
        found = find_bindings_in_list(parse_ssl_bindings(ENGLISH_OUTPUT), ["www.example.com"])
        assert list(found) == ["www.example.com"]


class TestBind:
    """Bind, rebind and verification."""

    @pytest.mark.asyncio
    async def test_sni_bind(self, fake_netsh):
        service = SSLBindingService(fake_netsh)
        target = BindingTarget(domain="www.example.com", host="www.example.com", port=443)

        binding = await service.bind(target, THUMBPRINT)

        assert binding.cert_hash == THUMBPRINT.lower()
        assert fake_netsh.table == {("host", "www.example.com:443"): THUMBPRINT.lower()}
        add = next(cmd for cmd in fake_netsh.commands if cmd[2] == "add")
        assert "hostnameport=www.example.com:443" in add
        assert "certstorename=MY" in add
        assert "appid={00000000-0000-0000-0000-000000000000}" in add

    @pytest.mark.asyncio
    async def test_ip_bind(self, fake_netsh):
        service = SSLBindingService(fake_netsh)
        target = BindingTarget(domain="example.com", host="0.0.0.0", port=443, is_ip_binding=True)

        await service.bind(target, THUMBPRINT)

        assert ("ip", "0.0.0.0:443") in fake_netsh.table

    @pytest.mark.asyncio
    async def test_rebind_is_idempotent(self, fake_netsh):
        service = SSLBindingService(fake_netsh)
        target = BindingTarget(domain="www.example.com", host="www.example.com")

        await service.bind(target, OTHER_THUMBPRINT)
        await service.bind(target, THUMBPRINT)
        await service.bind(target, THUMBPRINT)

        assert fake_netsh.table == {("host", "www.example.com:443"): THUMBPRINT.lower()}

    @pytest.mark.asyncio
    async def test_reported_success_but_table_disagrees(self, fake_netsh):
        fake_netsh.override_hash = OTHER_THUMBPRINT
        service = SSLBindingService(fake_netsh)
        target = BindingTarget(domain="www.example.com", host="www.example.com")

        with pytest.raises(BindingVerificationError) as exc:
            await service.bind(target, THUMBPRINT)

        assert "reported success but unverified" in exc.value.message.lower()
        assert "binding mismatch on www.example.com:443" in exc.value.message

    @pytest.mark.asyncio
    async def test_zero_exit_without_message_counts_as_reported(self, fake_netsh):
        fake_netsh.override_hash = OTHER_THUMBPRINT
        fake_netsh.add_output = ""
        service = SSLBindingService(fake_netsh)
        target = BindingTarget(domain="www.example.com", host="www.example.com")

        with pytest.raises(BindingVerificationError, match="unverified"):
            await service.bind(target, THUMBPRINT)

    @pytest.mark.asyncio
    async def test_zero_exit_in_other_language_binds(self, fake_netsh):
        fake_netsh.add_output = "SSL-Zertifikat wurde erfolgreich hinzugef\u00fcgt"
        service = SSLBindingService(fake_netsh)

        binding = await service.bind(BindingTarget(domain="www.example.com", host="www.example.com"), THUMBPRINT)

        assert binding.cert_hash.lower() == THUMBPRINT.lower()

    @pytest.mark.asyncio
    async def test_reported_success_but_binding_missing(self, fake_netsh):
        async def run(*cmd, timeout=None):
            if cmd[2] == "show":
                return CommandResult(0, "", "")
            return CommandResult(0, "SSL Certificate successfully added", "")

        fake_netsh.run = run
        service = SSLBindingService(fake_netsh)

        with pytest.raises(BindingVerificationError, match="binding not found"):
            await service.bind(BindingTarget(domain="a.example.com", host="a.example.com"), THUMBPRINT)

    @pytest.mark.asyncio
    async def test_netsh_failure(self, fake_netsh):
        table_run = fake_netsh.run

        async def run(*cmd, timeout=None):
            if cmd[2] == "add":
                return CommandResult(1, "SSL Certificate add failed, Error: 1312", "")
            return await table_run(*cmd, timeout=timeout)

        fake_netsh.run = run
        service = SSLBindingService(fake_netsh)

        with pytest.raises(BindingError) as exc:
            await service.bind(BindingTarget(domain="a.example.com", host="a.example.com"), THUMBPRINT)
        assert not isinstance(exc.value, BindingVerificationError)
        assert "Error: 1312" in exc.value.message

    @pytest.mark.asyncio
    async def test_invalid_thumbprint_rejected_before_netsh(self, fake_netsh):
        service = SSLBindingService(fake_netsh)

        with pytest.raises(ConfigurationError):
            await service.bind(BindingTarget(domain="a.example.com", host="a.example.com"), "not-a-hash")
        assert fake_netsh.commands == []

    @pytest.mark.asyncio
    async def test_ip_binding_requires_ip_host(self, fake_netsh):
        service = SSLBindingService(fake_netsh)
        target = BindingTarget(domain="a.example.com", host="a.example.com", is_ip_binding=True)

        with pytest.raises(ConfigurationError):
            await service.bind(target, THUMBPRINT)


class TestLookup:
    @pytest.mark.asyncio
    async def test_find_bindings_for_domains(self, fake_netsh):
        fake_netsh.table[("host", "www.example.com:443")] = "1" * 40
        fake_netsh.table[("host", "other.org:443")] = "2" * 40
        fake_netsh.table[("ip", "0.0.0.0:443")] = "3" * 40
        service = SSLBindingService(fake_netsh)

        found = await service.find_bindings_for_domains(["*.example.com", "example.com"])

        assert list(found) == ["www.example.com"]

    @pytest.mark.asyncio
    async def test_list_failure_raises(self, fake_netsh):
        async def run(*cmd, timeout=None):
            return CommandResult(1, "", "The requested operation requires elevation")

        fake_netsh.run = run
        with pytest.raises(BindingError, match="elevation"):
            await SSLBindingService(fake_netsh).list_bindings()
