"""
Secret lookup used by the AI extraction stage.
"""

import os
from abc import ABC, abstractmethod
from typing import Dict, Optional


class CredentialStore(ABC):
    """Anything that can hand out a named secret."""

    @abstractmethod
    def get_secret(self, name: str) -> Optional[str]:
        """Return the secret, or None when it is not configured."""

    def has_secret(self, name: str) -> bool:
        return bool(self.get_secret(name))


class EnvCredentialStore(CredentialStore):
    """Reads secrets from environment variables, with optional overrides."""

    def __init__(self, overrides: Optional[Dict[str, Optional[str]]] = None):
        self._overrides = dict(overrides or {})

    def get_secret(self, name: str) -> Optional[str]:
        if name in self._overrides:
            value = self._overrides[name]
        else:
            value = os.getenv(name)
        if value is None:
            return None
        value = value.strip()
        return value or None
