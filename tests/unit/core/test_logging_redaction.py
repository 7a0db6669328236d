from unittest.mock import MagicMock, patch

from finopsbridge.shared.core.logging import audit_log, pii_redactor


def test_sensitive_keys_are_redacted_recursively():
    event = {
        "event": "adapter_built",
        "client_secret": "s3cr3t",
        "details": {"access_token": "abc", "nested": [{"api_key": "k"}], "region": "eu"},
    }
    redacted = pii_redactor(None, "info", event)
    assert redacted["client_secret"] == "[REDACTED]"
    assert redacted["details"]["access_token"] == "[REDACTED]"
    assert redacted["details"]["nested"][0]["api_key"] == "[REDACTED]"
    assert redacted["details"]["region"] == "eu"


def test_webhook_secrets_and_emails_are_masked_in_text():
    event = {
        "event": "webhook_delivery_failed",
        "url": "https://hooks.slack.com/services/T000/B000/XXXXSECRET",
        "error": "owner ops@example.com notified",
    }
    redacted = pii_redactor(None, "warning", event)
    assert redacted["url"] == "https://hooks.slack.com/services/[REDACTED]"
    assert "ops@example.com" not in redacted["error"]
    assert "[EMAIL_REDACTED]" in redacted["error"]


def test_discord_webhook_token_masked():
    event = {"url": "https://discord.com/api/webhooks/123/abcdef"}
    assert pii_redactor(None, "info", event)["url"] == "https://discord.com/api/webhooks/[REDACTED]"


def test_audit_log_emits_organization_and_metadata():
    fake_logger = MagicMock()
    with patch("structlog.get_logger", return_value=fake_logger):
        audit_log("remediation_succeeded", "org_1", {"policyId": "p1"})

    fake_logger.info.assert_called_once_with(
        "remediation_succeeded",
        organization_id="org_1",
        metadata={"policyId": "p1"},
    )
