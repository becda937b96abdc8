"""Unit tests for firewall collaborators."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from src.shared.automation.exceptions import FirewallError
from src.shared.automation.firewall import (
    DryRunFirewall,
    WAFIPSetFirewall,
    get_firewall,
    normalize_ip,
)


class TestNormalizeIP:
    def test_ipv4(self):
        assert normalize_ip(" 10.0.0.5 ") == "10.0.0.5"

    def test_ipv6_is_canonicalized(self):
        assert normalize_ip("2001:0db8:0000:0000:0000:0000:0000:0001") == "2001:db8::1"

    def test_invalid(self):
        with pytest.raises(FirewallError):
            normalize_ip("10.0.0.256")


class TestDryRunFirewall:
    def test_records_each_address_once(self):
        firewall = DryRunFirewall()

        firewall.block_ip("10.0.0.5")
        firewall.block_ip("10.0.0.5")
        firewall.block_ip("192.168.1.1")

        assert firewall.blocked == ["10.0.0.5", "192.168.1.1"]
        assert firewall.name == "dry_run"


class TestWAFIPSetFirewall:
    """Tests for the WAFv2 IP set client with a stubbed boto3 client."""

    @pytest.fixture
    def waf(self):
        firewall = WAFIPSetFirewall(ip_set_name="blocked-ips", ip_set_id="abc-123")
        firewall._client = MagicMock()
        firewall._client.get_ip_set.return_value = {
            "IPSet": {"Name": "blocked-ips", "Addresses": ["192.0.2.1/32"]},
            "LockToken": "token-1",
        }
        return firewall

    def test_adds_address_to_ip_set(self, waf):
        waf.block_ip("10.0.0.5")

        waf.client.get_ip_set.assert_called_once_with(
            Name="blocked-ips", Scope="REGIONAL", Id="abc-123"
        )
        waf.client.update_ip_set.assert_called_once_with(
            Name="blocked-ips",
            Scope="REGIONAL",
            Id="abc-123",
            Addresses=["192.0.2.1/32", "10.0.0.5/32"],
            LockToken="token-1",
        )

    def test_ipv6_uses_128_prefix(self, waf):
        waf.block_ip("2001:db8::1")

        addresses = waf.client.update_ip_set.call_args[1]["Addresses"]
        assert addresses[-1] == "2001:db8::1/128"

    def test_already_blocked(self, waf):
        waf.block_ip("192.0.2.1")

        waf.client.update_ip_set.assert_not_called()

    def test_client_error(self, waf):
        waf.client.update_ip_set.side_effect = ClientError(
            {"Error": {"Code": "WAFOptimisticLockException", "Message": "stale token"}},
            "UpdateIPSet",
        )

        with pytest.raises(FirewallError, match="10.0.0.5"):
            waf.block_ip("10.0.0.5")


class TestGetFirewall:
    def test_default_is_dry_run(self, monkeypatch):
        monkeypatch.delenv("AUTOMATION_FIREWALL", raising=False)

        assert isinstance(get_firewall(), DryRunFirewall)

    def test_waf_from_environment(self, monkeypatch):
        monkeypatch.setenv("AUTOMATION_FIREWALL", "waf")
        monkeypatch.setenv("AUTOMATION_WAF_IP_SET_NAME", "blocked-ips")
        monkeypatch.setenv("AUTOMATION_WAF_IP_SET_ID", "abc-123")

        firewall = get_firewall()

        assert isinstance(firewall, WAFIPSetFirewall)
        assert firewall.ip_set_name == "blocked-ips"
        assert firewall.scope == "REGIONAL"

    def test_kwargs_override_environment(self):
        firewall = get_firewall("waf", ip_set_name="ips", ip_set_id="1", scope="CLOUDFRONT")

        assert firewall.scope == "CLOUDFRONT"
