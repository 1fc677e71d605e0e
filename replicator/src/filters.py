from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

MARKER_LABEL_KEY = "push-to-k8s"
MARKER_LABEL_VALUE = "source"
SOURCE_SELECTOR = f"{MARKER_LABEL_KEY}={MARKER_LABEL_VALUE}"


def is_eligible(
    namespace_name: str,
    namespace_labels: Mapping[str, str] | None,
    source_namespace: str,
    exclude_label_key: str = "",
) -> bool:
    """Return True if a namespace may receive replicas.

    The source namespace never receives replicas.  When ``exclude_label_key``
    is set, any namespace carrying that label key is excluded regardless of
    the label's value (``skip=""`` excludes just like ``skip="true"``).
    """
    if namespace_name == source_namespace:
        return False
    if exclude_label_key and exclude_label_key in (namespace_labels or {}):
        return False
    return True


@dataclass(frozen=True)
class NamespacePolicy:
    """Eligibility policy shared by every sync path."""

    source_namespace: str
    exclude_label_key: str = ""

    def allows(self, namespace: Any) -> bool:
        metadata = getattr(namespace, "metadata", None)
        name = getattr(metadata, "name", None)
        if not name:
            return False
        labels = getattr(metadata, "labels", None)
        if not isinstance(labels, Mapping):
            labels = {}
        return is_eligible(name, labels, self.source_namespace, self.exclude_label_key)
