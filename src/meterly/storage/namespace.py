"""Per-tenant key namespaces."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantNamespace:
    """Builds storage keys private to one tenant."""

    tenant_id: str
    root: str = "meterly"

    def key(self, *parts: str) -> str:
        return ":".join((self.root, self.tenant_id, *parts))
