"""Credential resolution boundary.

Credential storage and encryption live outside the engine. The engine only
needs ``resolve(credential_id, user_id)`` returning decrypted values, or one
of the typed refusals below. ``StaticCredentialResolver`` is the in-process
implementation used for single-tenant deployments and tests.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from core.logging import get_logger
from services.execution.exceptions import (  # noqa: F401
    CredentialDenied,
    CredentialError,
    CredentialExpired,
    CredentialNotFound,
)

logger = get_logger(__name__)


class CredentialResolver(ABC):
    """Abstract credential resolver consumed by the node invoker."""

    @abstractmethod
    async def resolve(self, credential_id: str, user_id: Optional[str]) -> Dict[str, Any]:
        """Return decrypted credential data.

        Raises:
            CredentialNotFound, CredentialDenied, CredentialExpired
        """
        pass


@dataclass
class StoredCredential:
    data: Dict[str, Any]
    owner_id: Optional[str] = None  # None = usable by every user
    expires_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class StaticCredentialResolver(CredentialResolver):
    """Credentials held in memory, keyed by id."""

    def __init__(self, credentials: Optional[Dict[str, StoredCredential]] = None):
        self._credentials: Dict[str, StoredCredential] = dict(credentials or {})

    def add(self, credential_id: str, data: Dict[str, Any], owner_id: Optional[str] = None,
            expires_at: Optional[float] = None) -> None:
        self._credentials[credential_id] = StoredCredential(
            data=data, owner_id=owner_id, expires_at=expires_at
        )

    def remove(self, credential_id: str) -> bool:
        return self._credentials.pop(credential_id, None) is not None

    async def resolve(self, credential_id: str, user_id: Optional[str]) -> Dict[str, Any]:
        stored = self._credentials.get(credential_id)
        if stored is None:
            raise CredentialNotFound(credential_id)

        if stored.owner_id is not None and stored.owner_id != user_id:
            logger.warning("Credential access denied", credential_id=credential_id, user_id=user_id)
            raise CredentialDenied(credential_id, user_id)

        if stored.expires_at is not None and stored.expires_at <= time.time():
            raise CredentialExpired(credential_id, stored.expires_at)

        return dict(stored.data)
