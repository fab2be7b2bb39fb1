"""Per-identity quota queries against the worker CLI."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Sequence

from ..agent.runner import CommandRunner
from ..agent.utils import identity_environment
from .models import QUOTA_UNKNOWN, Identity, IdentityQuota

logger = logging.getLogger(__name__)


class QuotaChecker:
    """Run the quota dump command under each identity and fold buckets into categories."""

    def __init__(
        self,
        runner: CommandRunner,
        command: Sequence[str],
        categories: Mapping[str, str],
    ) -> None:
        self._runner = runner
        self._command = list(command)
        self._categories = dict(categories)

    @property
    def category_names(self) -> list[str]:
        return sorted(set(self._categories.values()))

    async def check(self, identity: Identity) -> IdentityQuota:
        """Query one identity. Any failure yields the unknown sentinel for every category."""

        result = await self._runner.run(
            *self._command, env=identity_environment(identity.home_directory)
        )
        if not result.ok:
            logger.warning(
                "Quota query failed",
                extra={"identity": identity.name, "returncode": result.returncode, "output": result.output[-500:]},
            )
            return self._unknown(identity)

        buckets = _extract_buckets(result.stdout)
        if buckets is None:
            logger.warning("Quota output was not parseable", extra={"identity": identity.name})
            return self._unknown(identity)
        return IdentityQuota(identity=identity.name, categories=self.fold(buckets))

    def fold(self, buckets: list[dict[str, Any]]) -> dict[str, int]:
        """Minimum remaining fraction per category, as a whole percentage."""

        minimums: dict[str, float] = {}
        for bucket in buckets:
            category = self._categories.get(str(bucket.get("modelId", "")))
            fraction = bucket.get("remainingFraction")
            if category is None or not isinstance(fraction, (int, float)):
                continue
            if category not in minimums or fraction < minimums[category]:
                minimums[category] = float(fraction)

        return {
            name: int(minimums[name] * 100) if name in minimums else QUOTA_UNKNOWN
            for name in self.category_names
        }

    async def check_all(self, identities: Sequence[Identity]) -> dict[str, IdentityQuota]:
        return {identity.name: await self.check(identity) for identity in identities}

    def _unknown(self, identity: Identity) -> IdentityQuota:
        return IdentityQuota(
            identity=identity.name,
            categories={name: QUOTA_UNKNOWN for name in self.category_names},
        )


def _extract_buckets(output: str) -> list[dict[str, Any]] | None:
    # The CLI may print banners around the JSON document.
    start = output.find("{")
    end = output.rfind("}")
    if start == -1 or end < start:
        return None
    try:
        document = json.loads(output[start : end + 1])
    except ValueError:
        return None
    if not isinstance(document, dict):
        return None
    buckets = document.get("buckets")
    if not isinstance(buckets, list):
        return None
    return [bucket for bucket in buckets if isinstance(bucket, dict)]


__all__ = ["QuotaChecker"]
