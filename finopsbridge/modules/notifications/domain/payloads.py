"""
Channel payload builders for violation notifications.

Slack gets Block Kit, Discord an embed, Teams a legacy MessageCard (still
accepted by incoming webhooks), and anything else a plain JSON document.
Every shape carries the policy identity, the violation id/message/severity/
status and an RFC 3339 timestamp.
"""

from __future__ import annotations

import ipaddress
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from finopsbridge.models.policy import Policy
from finopsbridge.models.violation import Violation
from finopsbridge.models.webhook import WebhookChannel

SEVERITY_EMOJI = {
    "low": "⚠️",
    "medium": "🔶",
    "high": "🔴",
    "critical": "🚨",
}
DEFAULT_EMOJI = "⚠️"

DISCORD_COLORS = {
    "low": 0xFFFF00,
    "medium": 0xFFA500,
    "high": 0xFF0000,
    "critical": 0x8B0000,
}
DEFAULT_DISCORD_COLOR = 0xFFFF00

TEAMS_THEME_COLOR = "FF0000"


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="seconds")


def _status(violation: Violation) -> str:
    status = violation.status
    return str(getattr(status, "value", status))


def _emoji(severity: str) -> str:
    return SEVERITY_EMOJI.get(severity, DEFAULT_EMOJI)


def build_slack_payload(policy: Policy, violation: Violation, timestamp: str) -> dict[str, Any]:
    emoji = _emoji(violation.severity)
    return {
        "text": f"{emoji} Policy Violation Detected",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} Policy Violation", "emoji": True},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Policy:*\n{policy.name}"},
                    {"type": "mrkdwn", "text": f"*Severity:*\n{violation.severity}"},
                    {"type": "mrkdwn", "text": f"*Cloud Provider:*\n{violation.cloud_provider}"},
                    {"type": "mrkdwn", "text": f"*Status:*\n{_status(violation)}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Message:*\n{violation.message}"},
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"Violation ID: {violation.id} | Created: {timestamp}",
                    }
                ],
            },
        ],
    }


def build_discord_payload(policy: Policy, violation: Violation, timestamp: str) -> dict[str, Any]:
    return {
        "embeds": [
            {
                "title": f"{_emoji(violation.severity)} Policy Violation Detected",
                "description": violation.message,
                "color": DISCORD_COLORS.get(violation.severity, DEFAULT_DISCORD_COLOR),
                "fields": [
                    {"name": "Policy", "value": policy.name, "inline": True},
                    {"name": "Severity", "value": violation.severity, "inline": True},
                    {"name": "Cloud Provider", "value": violation.cloud_provider, "inline": True},
                    {"name": "Status", "value": _status(violation), "inline": True},
                    {"name": "Violation ID", "value": violation.id, "inline": False},
                ],
                "timestamp": timestamp,
            }
        ]
    }


def build_teams_payload(policy: Policy, violation: Violation, timestamp: str) -> dict[str, Any]:
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": f"Policy Violation: {policy.name}",
        "themeColor": TEAMS_THEME_COLOR,
        "sections": [
            {
                "activityTitle": f"{_emoji(violation.severity)} Policy Violation Detected",
                "activitySubtitle": violation.message,
                "facts": [
                    {"name": "Policy", "value": policy.name},
                    {"name": "Severity", "value": violation.severity},
                    {"name": "Cloud Provider", "value": violation.cloud_provider},
                    {"name": "Status", "value": _status(violation)},
                    {"name": "Violation ID", "value": violation.id},
                    {"name": "Timestamp", "value": timestamp},
                ],
            }
        ],
    }


def build_generic_payload(policy: Policy, violation: Violation, timestamp: str) -> dict[str, Any]:
    created_at = _rfc3339(violation.created_at) if violation.created_at else None
    return {
        "type": "policy_violation",
        "policy": {
            "id": policy.id,
            "name": policy.name,
            "description": policy.description,
        },
        "violation": {
            "id": violation.id,
            "resourceId": violation.resource_id,
            "resourceType": violation.resource_type,
            "cloudProvider": violation.cloud_provider,
            "message": violation.message,
            "severity": violation.severity,
            "status": _status(violation),
            "createdAt": created_at,
        },
        "timestamp": timestamp,
    }


_BUILDERS: dict[str, Callable[[Policy, Violation, str], dict[str, Any]]] = {
    WebhookChannel.SLACK.value: build_slack_payload,
    WebhookChannel.DISCORD.value: build_discord_payload,
    WebhookChannel.TEAMS.value: build_teams_payload,
}


def build_payload(
    channel: str,
    policy: Policy,
    violation: Violation,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Build the body for `channel`; unknown channels get the generic document."""
    timestamp = _rfc3339(now or datetime.now(timezone.utc))
    builder = _BUILDERS.get(str(channel or "").strip().lower(), build_generic_payload)
    return builder(policy, violation, timestamp)


def _is_private_or_link_local(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
    )


def validate_webhook_url(
    url: str,
    *,
    require_https: bool,
    block_private_ips: bool,
) -> None:
    """Raise ValueError when the destination fails the configured safety checks."""
    parsed = urlparse(url)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ValueError("Webhook URL must use http or https")
    if require_https and parsed.scheme.lower() != "https":
        raise ValueError("Webhook URL must use HTTPS")
    if not parsed.hostname:
        raise ValueError("Webhook URL must include a host")
    if parsed.username or parsed.password:
        raise ValueError("Webhook URL must not include credentials")

    host = parsed.hostname.lower()
    if block_private_ips and (host == "localhost" or host.endswith(".local")):
        raise ValueError("Webhook URL must not target local hostnames")
    if block_private_ips and _is_private_or_link_local(host):
        raise ValueError("Webhook URL must not target private or link-local addresses")
