"""
Configuration for the playbook automation engine.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class AutomationConfig:
    """Configuration for playbook execution."""

    # Step execution settings
    http_timeout_seconds: int = 30
    smtp_timeout_seconds: int = 30
    smtp_starttls: bool = True
    max_response_body_bytes: int = 1024 * 1024

    # Background execution
    max_workers: int = 4

    # Storage settings
    execution_store_type: str = "memory"
    playbook_store_type: str = "memory"
    execution_table: str = "vsentry-playbook-executions"
    playbook_table: str = "vsentry-playbooks"
    playbook_path: str = "playbooks"

    # Incident lookup for incident_id triggers ("none", "dynamodb")
    incident_provider_type: str = "none"
    incident_table: str = "vsentry-incidents"

    # block_ip collaborator
    firewall_type: str = "dry_run"
    waf_ip_set_name: str = ""
    waf_ip_set_id: str = ""
    waf_scope: str = "REGIONAL"

    region: Optional[str] = None

    @classmethod
    def from_dict(cls, config_dict: Optional[Dict[str, Any]] = None) -> 'AutomationConfig':
        """Create config from dictionary."""
        if not config_dict:
            return cls()

        return cls(
            http_timeout_seconds=config_dict.get('http_timeout_seconds', 30),
            smtp_timeout_seconds=config_dict.get('smtp_timeout_seconds', 30),
            smtp_starttls=config_dict.get('smtp_starttls', True),
            max_response_body_bytes=config_dict.get('max_response_body_bytes', 1024 * 1024),
            max_workers=config_dict.get('max_workers', 4),
            execution_store_type=config_dict.get('execution_store_type', 'memory'),
            playbook_store_type=config_dict.get('playbook_store_type', 'memory'),
            execution_table=config_dict.get('execution_table', 'vsentry-playbook-executions'),
            playbook_table=config_dict.get('playbook_table', 'vsentry-playbooks'),
            playbook_path=config_dict.get('playbook_path', 'playbooks'),
            incident_provider_type=config_dict.get('incident_provider_type', 'none'),
            incident_table=config_dict.get('incident_table', 'vsentry-incidents'),
            firewall_type=config_dict.get('firewall_type', 'dry_run'),
            waf_ip_set_name=config_dict.get('waf_ip_set_name', ''),
            waf_ip_set_id=config_dict.get('waf_ip_set_id', ''),
            waf_scope=config_dict.get('waf_scope', 'REGIONAL'),
            region=config_dict.get('region'),
        )

    @classmethod
    def from_environment(cls) -> 'AutomationConfig':
        """Create config from environment variables."""
        return cls(
            http_timeout_seconds=int(os.environ.get('AUTOMATION_HTTP_TIMEOUT', '30')),
            smtp_timeout_seconds=int(os.environ.get('AUTOMATION_SMTP_TIMEOUT', '30')),
            smtp_starttls=os.environ.get('AUTOMATION_SMTP_STARTTLS', 'true').lower() == 'true',
            max_response_body_bytes=int(os.environ.get('AUTOMATION_MAX_RESPONSE_BYTES', str(1024 * 1024))),
            max_workers=int(os.environ.get('AUTOMATION_MAX_WORKERS', '4')),
            execution_store_type=os.environ.get('AUTOMATION_EXECUTION_STORE', 'memory'),
            playbook_store_type=os.environ.get('AUTOMATION_PLAYBOOK_STORE', 'memory'),
            execution_table=os.environ.get('EXECUTION_TABLE', 'vsentry-playbook-executions'),
            playbook_table=os.environ.get('PLAYBOOK_TABLE', 'vsentry-playbooks'),
            playbook_path=os.environ.get('AUTOMATION_PLAYBOOK_PATH', 'playbooks'),
            incident_provider_type=os.environ.get('AUTOMATION_INCIDENT_PROVIDER', 'none'),
            incident_table=os.environ.get('INCIDENT_TABLE', 'vsentry-incidents'),
            firewall_type=os.environ.get('AUTOMATION_FIREWALL', 'dry_run'),
            waf_ip_set_name=os.environ.get('AUTOMATION_WAF_IP_SET_NAME', ''),
            waf_ip_set_id=os.environ.get('AUTOMATION_WAF_IP_SET_ID', ''),
            waf_scope=os.environ.get('AUTOMATION_WAF_SCOPE', 'REGIONAL'),
            region=os.environ.get('AWS_REGION'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'http_timeout_seconds': self.http_timeout_seconds,
            'smtp_timeout_seconds': self.smtp_timeout_seconds,
            'smtp_starttls': self.smtp_starttls,
            'max_response_body_bytes': self.max_response_body_bytes,
            'max_workers': self.max_workers,
            'execution_store_type': self.execution_store_type,
            'playbook_store_type': self.playbook_store_type,
            'execution_table': self.execution_table,
            'playbook_table': self.playbook_table,
            'playbook_path': self.playbook_path,
            'incident_provider_type': self.incident_provider_type,
            'incident_table': self.incident_table,
            'firewall_type': self.firewall_type,
            'waf_ip_set_name': self.waf_ip_set_name,
            'waf_ip_set_id': self.waf_ip_set_id,
            'waf_scope': self.waf_scope,
            'region': self.region,
        }
