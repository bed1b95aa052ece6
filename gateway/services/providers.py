# services/providers.py
"""
Webhook event normalizers, looked up by provider name.

A normalizer turns a provider-specific webhook body into the standard
shape published to subscribers:

    {"event": "<name>", "call_id": ..., "session_id": ..., "data": {...}}

The registry is built at startup; concrete vendor adapters register
themselves there alongside the built-in ``generic`` normalizer.
"""

from typing import Any, Callable, Dict, List, Protocol

from gateway.core.errors import UnknownProviderError
from gateway.core.logger import get_logger

logger = get_logger("providers")

DEFAULT_PROVIDER = "generic"


class WebhookNormalizer(Protocol):
    name: str

    def normalize(self, raw_event: Dict[str, Any]) -> Dict[str, Any]: ...


class GenericNormalizer:
    """Passes events through, keeping only the well-known fields."""

    name = DEFAULT_PROVIDER

    def normalize(self, raw_event: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(raw_event, dict) or "event" not in raw_event:
            return {"event": "unknown", "data": raw_event}

        data = raw_event.get("data")
        if data is None:
            data = {
                k: v for k, v in raw_event.items()
                if k not in ("event", "call_id", "session_id", "provider")
            }

        return {
            "event": str(raw_event["event"]),
            "call_id": raw_event.get("call_id"),
            "session_id": raw_event.get("session_id"),
            "data": data,
        }


NormalizerFactory = Callable[[], WebhookNormalizer]


class ProviderRegistry:
    def __init__(self):
        self._factories: Dict[str, NormalizerFactory] = {}
        self._instances: Dict[str, WebhookNormalizer] = {}

    def register(self, name: str, factory: NormalizerFactory) -> None:
        key = name.strip().lower()
        self._factories[key] = factory
        self._instances.pop(key, None)
        logger.debug(f"Registered webhook provider: {key}")

    def unregister(self, name: str) -> None:
        key = name.strip().lower()
        self._factories.pop(key, None)
        self._instances.pop(key, None)

    def names(self) -> List[str]:
        return sorted(self._factories)

    def create(self, name: str) -> WebhookNormalizer:
        """Normalizer for ``name``; instances are created once and reused."""
        key = (name or DEFAULT_PROVIDER).strip().lower()
        if key not in self._factories:
            raise UnknownProviderError(f"Unknown provider: {name}")
        if key not in self._instances:
            self._instances[key] = self._factories[key]()
        return self._instances[key]


def default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(DEFAULT_PROVIDER, GenericNormalizer)
    return registry
