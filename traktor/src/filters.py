from __future__ import annotations

import logging
from collections.abc import Mapping

from traktor.src.models import SecretSnapshot

LOGGER = logging.getLogger(__name__)


def fingerprint(data: Mapping[str, bytes]) -> bytes:
    """Return a canonical serialization of Secret content.

    Keys are sorted and each entry is written as ``key=value;`` so two
    mappings with the same keys and bytes always produce the same
    fingerprint, regardless of insertion order.  This is an equality check,
    not a security boundary, so no hashing is applied.
    """
    parts: list[bytes] = []
    for key in sorted(data):
        value = data[key]
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError(f"Secret value for key {key!r} must be bytes")
        parts.append(key.encode("utf-8"))
        parts.append(b"=")
        parts.append(bytes(value))
        parts.append(b";")
    return b"".join(parts)


def should_admit(old: SecretSnapshot | None, new: SecretSnapshot | None) -> bool:
    """Decide whether a Secret notification may enter the reconcile queue.

    Returns ``False`` when:
    - ``old`` is absent, i.e. a creation or the initial cache population
      after a controller restart.  Admitting those would restart every
      dependent workload in the cluster on startup.
    - ``new`` is absent, i.e. a deletion.
    - The content fingerprints are equal, meaning only metadata changed.

    Never raises: snapshots whose content cannot be serialized are logged
    and rejected.
    """
    if old is None or new is None:
        return False

    try:
        return fingerprint(old.data) != fingerprint(new.data)
    except (AttributeError, TypeError, ValueError):
        LOGGER.warning(
            "Rejecting malformed Secret snapshot for %s",
            getattr(new, "key", "<unknown>"),
            exc_info=True,
        )
        return False
