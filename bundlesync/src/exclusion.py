from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

# System namespaces that never receive the trust bundle.
DEFAULT_EXCLUDED_NAMESPACES: frozenset[str] = frozenset(
    {
        "kube-system",
        "kube-public",
        "kube-node-lease",
        "local-path-storage",
    }
)


@dataclass(frozen=True)
class ExclusionPolicy:
    """Immutable set of namespace names that are never reconciled.

    Membership is decided by name only. Labels are never consulted, so a
    namespace that is relabeled after creation keeps the eligibility it had
    when it was first observed.
    """

    namespaces: frozenset[str] = field(default=DEFAULT_EXCLUDED_NAMESPACES)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> ExclusionPolicy:
        return cls(namespaces=frozenset(names))

    def is_excluded(self, namespace: str) -> bool:
        return namespace in self.namespaces
