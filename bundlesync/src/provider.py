from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DesiredDataProvider = Callable[[], Mapping[str, str]]


class ProviderError(RuntimeError):
    """Raised when the desired bundle data cannot be produced."""


def read_bundle_directory(path: Path) -> dict[str, str]:
    """Read every regular, non-hidden file in *path* into ``{filename: content}``.

    Mounted Secrets and ConfigMaps expose their keys as files next to hidden
    ``..data`` bookkeeping symlinks, which are skipped.
    """
    if not path.is_dir():
        raise ProviderError(f"bundle source directory {path} does not exist")

    data: dict[str, str] = {}
    for entry in sorted(path.iterdir()):
        if entry.name.startswith(".") or not entry.is_file():
            continue
        try:
            data[entry.name] = entry.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ProviderError(f"failed to read bundle file {entry}") from exc
    return data


def directory_data_provider(path: str | Path) -> DesiredDataProvider:
    """Return a provider that re-reads the bundle directory on every call.

    No caching is done: a certificate rotated on disk is picked up by the next
    reconciliation.
    """
    source = Path(path)

    def _provide() -> dict[str, str]:
        data = read_bundle_directory(source)
        if not data:
            LOGGER.warning("Bundle source directory %s is empty", source)
        return data

    return _provide
