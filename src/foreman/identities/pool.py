"""Round-robin credential pool with quota-driven exhaustion."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable

from ..errors import NoAvailableIdentityError
from .loader import IdentityLoader
from .models import Identity, IdentityQuota
from .quota import QuotaChecker

logger = logging.getLogger(__name__)

# Exhaustion is sticky: it clears only when a quota refresh shows capacity
# or reset_exhaustion() is called. A timedelta here adds an automatic expiry.
EXHAUSTION_COOLDOWN: timedelta | None = None


class CredentialPool:
    """Selects the identity for each dispatch."""

    def __init__(
        self,
        identities: Iterable[Identity] | None = None,
        *,
        pooling_enabled: bool = True,
        exhaustion_cooldown: timedelta | None = EXHAUSTION_COOLDOWN,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._identities: list[Identity] = list(identities or [])
        self._exhausted: dict[str, datetime] = {}
        self._quotas: dict[str, IdentityQuota] = {}
        self._last_index = -1
        self._exhaustion_cooldown = exhaustion_cooldown
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.pooling_enabled = pooling_enabled

    @classmethod
    def load(cls, directory: Path, **kwargs) -> "CredentialPool":
        identities = IdentityLoader(directory).load_all()
        logger.info(
            "Loaded identities",
            extra={"directory": str(directory), "identities": [identity.name for identity in identities]},
        )
        return cls(identities, **kwargs)

    def add(self, identity: Identity) -> None:
        with self._lock:
            self._identities.append(identity)

    @property
    def identities(self) -> list[Identity]:
        with self._lock:
            return list(self._identities)

    def next_available(self) -> Identity:
        """Pick the identity for the next dispatch.

        Without pooling, or with a single identity, the first identity is
        always returned. Raises NoAvailableIdentityError when the pool is
        empty or every pooled identity is exhausted.
        """

        with self._lock:
            if not self._identities:
                raise NoAvailableIdentityError("No identities configured")
            if not self.pooling_enabled or len(self._identities) == 1:
                return self._identities[0]

            count = len(self._identities)
            for offset in range(1, count + 1):
                index = (self._last_index + offset) % count
                candidate = self._identities[index]
                if not self._is_exhausted_locked(candidate.name):
                    self._last_index = index
                    return candidate
            raise NoAvailableIdentityError("All identities exhausted")

    def mark_exhausted(self, name: str) -> None:
        with self._lock:
            self._exhausted[name] = self._clock()
        logger.warning("Identity marked exhausted", extra={"identity": name})

    def is_exhausted(self, name: str) -> bool:
        with self._lock:
            return self._is_exhausted_locked(name)

    def reset_exhaustion(self, name: str | None = None) -> None:
        """Clear the exhaustion mark for one identity, or for all of them."""

        with self._lock:
            if name is None:
                self._exhausted.clear()
            else:
                self._exhausted.pop(name, None)

    def apply_quota(self, quota: IdentityQuota) -> None:
        with self._lock:
            self._quotas[quota.identity] = quota
            if quota.is_depleted():
                self._exhausted.setdefault(quota.identity, self._clock())
            elif quota.has_capacity():
                self._exhausted.pop(quota.identity, None)

    async def refresh_quota(self, checker: QuotaChecker) -> dict[str, IdentityQuota]:
        quotas = await checker.check_all(self.identities)
        for quota in quotas.values():
            self.apply_quota(quota)
        return quotas

    def quotas(self) -> dict[str, IdentityQuota]:
        with self._lock:
            return dict(self._quotas)

    def exhausted_names(self) -> list[str]:
        with self._lock:
            return [
                identity.name
                for identity in self._identities
                if self._is_exhausted_locked(identity.name)
            ]

    def _is_exhausted_locked(self, name: str) -> bool:
        marked = self._exhausted.get(name)
        if marked is None:
            return False
        if self._exhaustion_cooldown is not None and self._clock() - marked >= self._exhaustion_cooldown:
            del self._exhausted[name]
            return False
        return True


__all__ = ["CredentialPool", "EXHAUSTION_COOLDOWN"]
