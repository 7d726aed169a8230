"""
Credential store with deterministic per-provider resolution.

Selection order for a provider:
1. the credential flagged active for that provider
2. the first stored credential for that provider
3. an environment-level key (Settings: API_KEY, GEMINI_API_KEY, GOOGLE_API_KEY)

Usage counters are updated atomically per credential.
"""

import logging
import threading
from datetime import UTC, datetime

from core.config import Settings, get_settings

from .base import Credential, ProviderKind

logger = logging.getLogger(__name__)

ENV_CREDENTIAL_ID = "env"


class CredentialStore:
    """In-memory credential list owned by one engine instance."""

    def __init__(
        self,
        credentials: list[Credential] | None = None,
        settings: Settings | None = None,
    ):
        self._credentials: list[Credential] = list(credentials or [])
        self._settings = settings or get_settings()
        self._lock = threading.Lock()

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    def add(self, credential: Credential) -> None:
        with self._lock:
            self._credentials.append(credential)

    def set_active(self, credential_id: str) -> None:
        """Mark one credential active, clearing the flag on its provider siblings."""
        with self._lock:
            target = self._find(credential_id)
            if target is None:
                raise KeyError(credential_id)
            for cred in self._credentials:
                if cred.provider == target.provider:
                    cred.is_active = cred.id == credential_id

    def get(self, credential_id: str) -> Credential | None:
        return self._find(credential_id)

    def _find(self, credential_id: str) -> Credential | None:
        for cred in self._credentials:
            if cred.id == credential_id:
                return cred
        return None

    def resolve_credential(self, provider: ProviderKind | str) -> Credential | None:
        """
        Pick the credential to use for ``provider``.

        Returns None when nothing is configured and no environment key exists.
        The environment fallback carries no base URL and is never counted.
        """
        provider = ProviderKind.parse(provider)
        candidates = [c for c in self._credentials if c.provider == provider]

        for cred in candidates:
            if cred.is_active:
                return cred
        if candidates:
            return candidates[0]

        env_key = self._settings.fallback_api_key
        if env_key:
            logger.debug(f"[Credentials] Using environment key for {provider}")
            return Credential(id=ENV_CREDENTIAL_ID, provider=provider, key=env_key, label="environment")

        return None

    def report_usage(self, credential_id: str | None) -> None:
        """Increment the usage counter of a stored credential."""
        if not credential_id or credential_id == ENV_CREDENTIAL_ID:
            return
        with self._lock:
            cred = self._find(credential_id)
            if cred is None:
                logger.warning(f"[Credentials] Usage reported for unknown credential {credential_id}")
                return
            cred.usage_count += 1
            cred.last_used = datetime.now(UTC)
