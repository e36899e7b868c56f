from __future__ import annotations

from typing import Any

from dnssync.src.config import CoreDNSConfig
from dnssync.src.configmap import has_management_label
from dnssync.src.scope import ScopeFilter

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


class EventPredicate:
    """Decides whether a watch event should enqueue a reconciliation pass.

    ``old`` is the cached object before the event (``None`` when the object
    was not cached yet), ``new`` is the object carried by the event.
    """

    resource = "unknown"

    def create(self, new: Any) -> bool:
        return True

    def update(self, old: Any, new: Any) -> bool:
        return True

    def delete(self, old: Any) -> bool:
        return True

    def should_enqueue(self, event_type: str, old: Any, new: Any) -> bool:
        if event_type == ADDED:
            return self.create(new)
        if event_type == MODIFIED:
            if old is None:
                return self.create(new)
            return self.update(old, new)
        if event_type == DELETED:
            return self.delete(new if new is not None else old)
        return False


class IngressEventPredicate(EventPredicate):
    """Ingress events that can change the set of rewrite rules.

    Updates count when the object is in scope before *or* after the change,
    so an annotation flip or class change prunes or restores its hosts.
    Deletes always count so removed hosts are pruned.
    """

    resource = "ingress"

    def __init__(self, scope_filter: ScopeFilter) -> None:
        self.scope_filter = scope_filter

    def create(self, new: Any) -> bool:
        return self.scope_filter.in_scope(new)

    def update(self, old: Any, new: Any) -> bool:
        return self.scope_filter.in_scope(old) or self.scope_filter.in_scope(new)


class ArtifactEventPredicate(EventPredicate):
    """Events on the generated ConfigMap.

    The controller's own writes always carry the management label, so only
    updates where the label is missing or wrong (someone else edited the
    map) re-trigger a pass.  A delete always does, to recreate the map.
    """

    resource = "artifact"

    def __init__(self, coredns: CoreDNSConfig) -> None:
        self.coredns = coredns

    def create(self, new: Any) -> bool:
        return False

    def update(self, old: Any, new: Any) -> bool:
        return not has_management_label(new, self.coredns.managed_by)


class ServerConfigEventPredicate(EventPredicate):
    """Every event on the CoreDNS Corefile ConfigMap re-checks the import directive."""

    resource = "corefile"
