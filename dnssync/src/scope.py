from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from dnssync.src.config import ScopeConfig

_FALSE_LIKE = frozenset({"false", "0", "no", "off", "disabled"})


def is_false_like(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _FALSE_LIKE


def _metadata(obj: Any) -> tuple[str, str, dict[str, str]]:
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", None) or ""
    name = getattr(metadata, "name", None) or ""
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        annotations = {}
    return namespace, name, annotations


class ScopeFilter:
    """Decides whether an Ingress is in scope for DNS rewrite generation.

    The filter is pure: it only looks at the object it is handed and the
    :class:`ScopeConfig` it was built with.  It is shared by the watch
    predicates (to decide whether an event is relevant) and the reconciler
    (to select objects from a full listing), so both always agree.
    """

    def __init__(self, scope: ScopeConfig) -> None:
        self.scope = scope
        self._excluded_names: frozenset[str] = frozenset(
            entry for entry in scope.exclude_ingresses if "/" not in entry
        )
        refs: set[tuple[str, str]] = set()
        for entry in scope.exclude_ingresses:
            if "/" not in entry:
                continue
            namespace, _, name = entry.partition("/")
            if namespace.strip() and name.strip():
                refs.add((namespace.strip(), name.strip()))
        self._excluded_refs: frozenset[tuple[str, str]] = frozenset(refs)

    @property
    def watches_all_namespaces(self) -> bool:
        return not self.scope.watch_namespaces

    def should_watch_namespace(self, namespace: str) -> bool:
        if namespace in self.scope.exclude_namespaces:
            return False
        return self.watches_all_namespaces or namespace in self.scope.watch_namespaces

    def is_excluded(self, namespace: str, name: str) -> bool:
        return name in self._excluded_names or (namespace, name) in self._excluded_refs

    def in_scope(self, obj: Any) -> bool:
        if obj is None:
            return False
        spec = getattr(obj, "spec", None)
        ingress_class = getattr(spec, "ingress_class_name", None)
        if not ingress_class or ingress_class != self.scope.ingress_class:
            return False

        namespace, name, annotations = _metadata(obj)
        if not self.should_watch_namespace(namespace):
            return False
        if self.is_excluded(namespace, name):
            return False

        key = self.scope.annotation_enabled_key
        if key and key in annotations and is_false_like(annotations[key]):
            return False
        return True

    def extract_hosts(self, ingresses: Iterable[Any]) -> list[str]:
        """Return the de-duplicated hosts of all in-scope Ingresses.

        Hosts keep the order in which they were first seen.  Rules without a
        host, or with a host that is not a single non-blank token, are skipped.
        """
        hosts: dict[str, None] = {}
        for ingress in ingresses:
            if not self.in_scope(ingress):
                continue
            rules = getattr(getattr(ingress, "spec", None), "rules", None) or []
            for rule in rules:
                host = getattr(rule, "host", None)
                if not isinstance(host, str):
                    continue
                host = host.strip()
                if not host or any(ch.isspace() for ch in host):
                    continue
                hosts.setdefault(host, None)
        return list(hosts)
