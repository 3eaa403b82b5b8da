"""
Provider contract every DNS vendor backend implements, and the factory that
builds a backend from an account's provider name.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from ..errors import ValidationError
from .types import Record, RecordIdT


class DNSProvider(ABC):
    """
    Abstract DNS provider.

    Every method is a network call. Implementations raise ``CredentialError``
    when the vendor rejects authentication and ``ProviderAPIError`` for any
    other failure; vendor specific exceptions must not escape.
    """

    name: str = ""

    @abstractmethod
    async def validate_credentials(self) -> None: ...

    @abstractmethod
    async def get_expected_nameservers(self, domain: str) -> list[str]: ...

    @abstractmethod
    async def list_records(self, domain: str) -> list[Record]: ...

    @abstractmethod
    async def create_record(self, domain: str, record: Record) -> Record:
        """Create ``record`` and return it with the provider assigned id."""

    @abstractmethod
    async def update_record(
        self, domain: str, record_id: RecordIdT, record: Record
    ) -> Record: ...

    @abstractmethod
    async def delete_record(self, domain: str, record_id: RecordIdT) -> None: ...

    async def close(self) -> None:
        """Release network resources held by the provider."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.close()


ProviderFactoryT = Callable[..., DNSProvider]

_providers: dict[str, type[DNSProvider]] = {}


def register_provider(name: str):
    """Class decorator adding a backend to the provider registry."""

    def decorator(cls: type[DNSProvider]) -> type[DNSProvider]:
        cls.name = name
        _providers[name] = cls
        return cls

    return decorator


def available_providers() -> list[str]:
    return sorted(_providers)


def create_provider(
    provider: str,
    api_token: str,
    api_id: Optional[str] = None,
    timeout: float = 30,
) -> DNSProvider:
    """
    Build the backend registered under ``provider``.

    Raises:
        ValidationError: If no backend is registered under that name
    """
    try:
        provider_cls = _providers[provider]
    except KeyError:
        raise ValidationError(
            f"Unsupported DNS provider '{provider}', "
            f"expected one of: {', '.join(available_providers())}"
        )
    return provider_cls(api_token=api_token, api_id=api_id, timeout=timeout)
