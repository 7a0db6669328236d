from __future__ import annotations

from typing import Callable, Dict, Type

from finopsbridge.models.cloud import CloudAccount
from finopsbridge.shared.adapters.base import CloudProviderAdapter
from finopsbridge.shared.core.config import Settings
from finopsbridge.shared.core.exceptions import CollectorError


def normalize_provider(value: object) -> str:
    raw = getattr(value, "value", value)
    return str(raw or "").strip().lower()


class ProviderRegistry:
    """
    Registry of provider variants keyed by provider kind.

    Adding a cloud means writing one adapter class decorated with
    `@ProviderRegistry.register("<kind>")`; nothing else switches on kind.
    """

    _registry: Dict[str, Type[CloudProviderAdapter]] = {}

    @classmethod
    def register(
        cls, kind: str
    ) -> Callable[[Type[CloudProviderAdapter]], Type[CloudProviderAdapter]]:
        """Decorator to register an adapter class for a provider kind."""

        def wrapper(adapter_cls: Type[CloudProviderAdapter]) -> Type[CloudProviderAdapter]:
            key = normalize_provider(kind)
            if not key:
                raise ValueError("Provider kind is required to register an adapter")
            existing = cls._registry.get(key)
            # Allow idempotent module reload registration, but reject conflicting overrides.
            if existing is not None and existing is not adapter_cls:
                raise ValueError(
                    f"Duplicate adapter registration for {key}: "
                    f"{existing.__name__} vs {adapter_cls.__name__}"
                )
            adapter_cls.kind = key
            cls._registry[key] = adapter_cls
            return adapter_cls

        return wrapper

    @classmethod
    def unregister(cls, kind: str) -> None:
        cls._registry.pop(normalize_provider(kind), None)

    @classmethod
    def supported_kinds(cls) -> list[str]:
        return sorted(cls._registry)

    @classmethod
    def get_adapter(
        cls, account: CloudAccount, settings: Settings | None = None
    ) -> CloudProviderAdapter:
        key = normalize_provider(account.type)
        adapter_cls = cls._registry.get(key)
        if adapter_cls is None:
            supported = ", ".join(cls.supported_kinds()) or "none"
            raise CollectorError(
                f"Unsupported provider type '{account.type}' (supported: {supported})",
                code="unsupported_provider",
                details={"account_id": account.id},
            )
        return adapter_cls.from_account(account, settings)
