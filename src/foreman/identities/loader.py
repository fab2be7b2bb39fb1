"""Identity record loading."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import IdentityLoadError
from .models import Identity

logger = logging.getLogger(__name__)

IDENTITY_DESCRIPTOR = "identity.json"


class IdentityLoader:
    """Loads identity records from one subdirectory per identity.

    Malformed or missing records are skipped with a warning; a record without
    a name takes the name of its directory.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def load_all(self) -> list[Identity]:
        if not self._directory.is_dir():
            return []

        identities: list[Identity] = []
        seen: set[str] = set()
        for entry in sorted(self._directory.iterdir()):
            if not entry.is_dir():
                continue
            try:
                identity = self._load_one(entry)
            except IdentityLoadError as exc:
                logger.warning("Skipping identity record", extra={"path": str(entry), "error": str(exc)})
                continue
            if identity is None:
                continue
            if identity.name in seen:
                logger.warning("Duplicate identity name", extra={"identity": identity.name})
                continue
            seen.add(identity.name)
            identities.append(identity)
        return identities

    def _load_one(self, directory: Path) -> Identity | None:
        descriptor = directory / IDENTITY_DESCRIPTOR
        if not descriptor.is_file():
            return None
        try:
            document = yaml.safe_load(descriptor.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise IdentityLoadError(f"Failed to read {descriptor}: {exc}") from exc

        if not isinstance(document, dict):
            raise IdentityLoadError(f"Identity descriptor {descriptor} is not a mapping")

        record = dict(document)
        name = record.get("name")
        if not isinstance(name, str) or not name.strip():
            record["name"] = directory.name
        record["home_directory"] = directory
        try:
            return Identity.model_validate(record)
        except ValidationError as exc:
            raise IdentityLoadError(f"Identity validation error in {descriptor}: {exc}") from exc


def load_identities(directory: Path) -> list[Identity]:
    """Convenience wrapper for loading identities from ``directory``."""

    return IdentityLoader(directory).load_all()


__all__ = ["IDENTITY_DESCRIPTOR", "IdentityLoader", "load_identities"]
