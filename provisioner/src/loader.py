from __future__ import annotations

import copy
import logging
from typing import Any

from provisioner.src.api import (
    INSTALLATION_KIND,
    OWNER_KIND_LABEL,
    OWNER_NAME_LABEL,
    PHASE_UNPACKED,
    Bundle,
    InstallationRequest,
)
from provisioner.src.errors import BundleLoadError, BundleNotUnpacked, StorageError
from provisioner.src.storage import Storage

LOGGER = logging.getLogger(__name__)


def owner_labels(request: InstallationRequest) -> dict[str, str]:
    return {
        OWNER_KIND_LABEL: INSTALLATION_KIND,
        OWNER_NAME_LABEL: request.name,
    }


def with_owner_labels(obj: dict[str, Any], request: InstallationRequest) -> dict[str, Any]:
    """Return a copy of *obj* carrying the owner labels for *request*.

    Existing labels are kept; the owner labels win on key collisions.  The
    input object is left untouched so a storage-side cache is never mutated.
    """
    labeled = copy.deepcopy(obj)
    metadata = labeled.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        labeled["metadata"] = metadata
    labels = metadata.get("labels")
    merged = dict(labels) if isinstance(labels, dict) else {}
    merged.update(owner_labels(request))
    metadata["labels"] = merged
    return labeled


def load_bundle_objects(
    bundle: Bundle,
    request: InstallationRequest,
    storage: Storage,
) -> list[dict[str, Any]]:
    """Load the ordered, owner-labeled manifest objects of *bundle*.

    Raises :class:`BundleNotUnpacked` while the Bundle is outside the
    ``Unpacked`` phase (the caller waits for the Bundle watch to fire), and
    :class:`BundleLoadError` for any storage failure.
    """
    if bundle.phase != PHASE_UNPACKED:
        raise BundleNotUnpacked(bundle.phase)

    try:
        objects = storage.load(bundle)
    except StorageError as exc:
        raise BundleLoadError(f"load bundle objects: {exc}") from exc

    LOGGER.debug(
        "Loaded %d object(s) from bundle %s for %s",
        len(objects),
        bundle.name,
        request.name,
    )
    return [with_owner_labels(obj, request) for obj in objects]
