"""
Typed Credential Classes

Cloud accounts store their credentials as a JSON document. These Pydantic
models decode that document per provider so adapters never read raw dicts.
"""
import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from finopsbridge.shared.core.exceptions import ConfigurationError


class CloudCredentials(BaseModel):
    """Base class for all cloud credentials."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AWSCredentials(CloudCredentials):
    """AWS STS AssumeRole credentials."""

    role_arn: str = Field(..., alias="roleArn")
    external_id: Optional[str] = Field(default=None, alias="externalId")
    region: Optional[str] = None


class AzureCredentials(CloudCredentials):
    """Azure Service Principal credentials."""

    tenant_id: str = Field(..., alias="tenantId")
    client_id: str = Field(..., alias="clientId")
    client_secret: SecretStr = Field(..., alias="clientSecret")


class GCPCredentials(CloudCredentials):
    """GCP service account plus the billing export location."""

    service_account_json: Optional[SecretStr] = Field(
        default=None, alias="serviceAccountKey"
    )
    billing_project_id: Optional[str] = Field(default=None, alias="billingProjectId")
    billing_dataset: Optional[str] = Field(default=None, alias="billingDataset")
    billing_table: Optional[str] = Field(default=None, alias="billingTable")

    def service_account_info(self) -> dict[str, Any] | None:
        if self.service_account_json is None:
            return None
        raw = self.service_account_json.get_secret_value()
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError("GCP service account key is not valid JSON") from e
        if not isinstance(info, dict):
            raise ConfigurationError("GCP service account key must be a JSON object")
        return info


def parse_credentials(raw: str | None, model: type[CloudCredentials]) -> Any:
    """Decode a stored credentials document into the given credential model."""
    try:
        payload = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"{model.__name__} document is not valid JSON"
        ) from e
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{model.__name__} document must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        missing = sorted(
            str(err["loc"][0]) for err in e.errors() if err.get("loc")
        )
        raise ConfigurationError(
            f"{model.__name__} is incomplete",
            details={"fields": missing},
        ) from e
