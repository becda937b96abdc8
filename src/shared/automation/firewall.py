"""Firewall collaborators for the ``block_ip`` step.

Provides the interface used by the block_ip executor and two
implementations: a dry-run client that only records and logs requests, and
an AWS WAFv2 client that adds addresses to an IP set.
"""

import ipaddress
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from .exceptions import FirewallError

logger = logging.getLogger(__name__)


def normalize_ip(ip: str) -> str:
    """Validate an IPv4/IPv6 address and return its canonical form.

    Raises:
        FirewallError: If ``ip`` is not a valid address
    """
    try:
        return str(ipaddress.ip_address(str(ip).strip()))
    except ValueError:
        raise FirewallError(f"Invalid IP address: {ip!r}")


class FirewallClient(ABC):
    """Interface to a network-control system able to block addresses."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def block_ip(self, ip: str) -> None:
        """Block traffic from an address.

        Args:
            ip: IPv4 or IPv6 address

        Raises:
            FirewallError: If the address could not be blocked
        """
        pass


class DryRunFirewall(FirewallClient):
    """Records block requests without touching any network control."""

    def __init__(self):
        self._blocked: List[str] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "dry_run"

    @property
    def blocked(self) -> List[str]:
        with self._lock:
            return list(self._blocked)

    def block_ip(self, ip: str) -> None:
        address = normalize_ip(ip)
        with self._lock:
            if address not in self._blocked:
                self._blocked.append(address)
        logger.info(f"Would block IP {address} (dry run)")


class WAFIPSetFirewall(FirewallClient):
    """Blocks addresses by adding them to an AWS WAFv2 IP set.

    The IP set is expected to be referenced by a blocking rule in a web ACL.
    """

    def __init__(
        self,
        ip_set_name: str,
        ip_set_id: str,
        scope: str = "REGIONAL",
        region: Optional[str] = None,
    ):
        """Initialize WAF firewall client.

        Args:
            ip_set_name: Name of the WAFv2 IP set
            ip_set_id: ID of the WAFv2 IP set
            scope: REGIONAL or CLOUDFRONT
            region: AWS region (default: use environment)
        """
        self.ip_set_name = ip_set_name
        self.ip_set_id = ip_set_id
        self.scope = scope
        self.region = region
        self._client = None

    @property
    def name(self) -> str:
        return "waf"

    @property
    def client(self):
        """Lazy-load WAFv2 client."""
        if self._client is None:
            import boto3
            self._client = boto3.client("wafv2", region_name=self.region)
        return self._client

    def block_ip(self, ip: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        address = normalize_ip(ip)
        prefix = 32 if ipaddress.ip_address(address).version == 4 else 128
        cidr = f"{address}/{prefix}"

        try:
            response = self.client.get_ip_set(
                Name=self.ip_set_name, Scope=self.scope, Id=self.ip_set_id
            )
            addresses = response["IPSet"].get("Addresses", [])
            if cidr in addresses:
                logger.info(f"IP {address} already blocked in IP set {self.ip_set_name}")
                return

            self.client.update_ip_set(
                Name=self.ip_set_name,
                Scope=self.scope,
                Id=self.ip_set_id,
                Addresses=addresses + [cidr],
                LockToken=response["LockToken"],
            )
        except (ClientError, BotoCoreError) as e:
            raise FirewallError(f"Failed to block {address} in WAF IP set: {e}")

        logger.info(f"Blocked IP {address} in WAF IP set {self.ip_set_name}")


def get_firewall(firewall_type: Optional[str] = None, **kwargs) -> FirewallClient:
    """Factory function to get a firewall client.

    Args:
        firewall_type: "dry_run" or "waf"
        **kwargs: Client-specific configuration

    Returns:
        FirewallClient instance
    """
    if firewall_type is None:
        firewall_type = os.environ.get("AUTOMATION_FIREWALL", "dry_run")

    if firewall_type == "waf":
        return WAFIPSetFirewall(
            ip_set_name=kwargs.get("ip_set_name", os.environ.get("AUTOMATION_WAF_IP_SET_NAME", "")),
            ip_set_id=kwargs.get("ip_set_id", os.environ.get("AUTOMATION_WAF_IP_SET_ID", "")),
            scope=kwargs.get("scope", os.environ.get("AUTOMATION_WAF_SCOPE", "REGIONAL")),
            region=kwargs.get("region", os.environ.get("AWS_REGION")),
        )
    return DryRunFirewall()
