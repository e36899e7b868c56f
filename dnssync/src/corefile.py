from __future__ import annotations

import copy
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes.client import ApiException, V1ConfigMap

from dnssync.src.config import CoreDNSConfig
from dnssync.src.kube import KubernetesResourceClient
from dnssync.src.metrics import METRICS
from dnssync.src.retry import (
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF_SECONDS,
    MalformedResourceError,
    is_not_found,
    optimistic_update,
)

LOGGER = logging.getLogger(__name__)

_DEFAULT_INDENT = "    "


@dataclass(frozen=True)
class LineEdit:
    """Outcome of a line-level edit.

    ``anchored`` is False only when a line had to be appended because no
    anchor matched; callers surface that as a warning.
    """

    text: str
    changed: bool
    anchored: bool = True


def _leading_whitespace(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def contains_line(doc: str, line: str) -> bool:
    target = line.strip()
    return any(existing.strip() == target for existing in doc.split("\n"))


def ensure_line(doc: str, anchor_pattern: str | re.Pattern[str], line: str) -> LineEdit:
    """Insert *line* right after the first line matching *anchor_pattern*.

    Matching compares stripped content, so a directive that is already
    present with different indentation counts as present.  The inserted line
    is indented like the body of the anchored block.  With no anchor the line
    is appended at the end of the document.
    """
    if contains_line(doc, line):
        return LineEdit(text=doc, changed=False)

    pattern = re.compile(anchor_pattern) if isinstance(anchor_pattern, str) else anchor_pattern
    lines = doc.split("\n")
    directive = line.strip()

    for index, existing in enumerate(lines):
        if not pattern.fullmatch(existing.strip()):
            continue
        anchor_indent = _leading_whitespace(existing)
        indent = anchor_indent + _DEFAULT_INDENT
        if index + 1 < len(lines) and lines[index + 1].strip():
            body_indent = _leading_whitespace(lines[index + 1])
            if len(body_indent) > len(anchor_indent):
                indent = body_indent
        lines.insert(index + 1, indent + directive)
        return LineEdit(text="\n".join(lines), changed=True)

    if lines and lines[-1] == "":
        lines.insert(len(lines) - 1, directive)
    else:
        lines.append(directive)
    return LineEdit(text="\n".join(lines), changed=True, anchored=False)


def remove_line(doc: str, line: str) -> LineEdit:
    """Drop every line whose stripped content equals *line*."""
    target = line.strip()
    lines = doc.split("\n")
    kept = [existing for existing in lines if existing.strip() != target]
    if len(kept) == len(lines):
        return LineEdit(text=doc, changed=False)
    return LineEdit(text="\n".join(kept), changed=True)


class CorefileMutator:
    """Keeps the ``import`` directive for the generated rules in the Corefile.

    The Corefile ConfigMap belongs to the cluster's CoreDNS installation; the
    controller only ever adds or removes its single directive line.
    """

    def __init__(
        self,
        resources: KubernetesResourceClient,
        coredns: CoreDNSConfig,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resources = resources
        self.coredns = coredns
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.logger = logger or LOGGER
        self._anchor = re.compile(coredns.server_block_pattern)

    def _read(self, *, missing_ok: bool) -> V1ConfigMap | None:
        namespace = self.coredns.namespace
        name = self.coredns.configmap_name
        try:
            config_map = self.resources.get_config_map(namespace, name)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            if missing_ok:
                return None
            raise MalformedResourceError(
                f"CoreDNS ConfigMap {namespace}/{name} not found"
            ) from exc

        if not missing_ok and self.coredns.corefile_key not in (config_map.data or {}):
            raise MalformedResourceError(
                f"key {self.coredns.corefile_key!r} not found in ConfigMap {namespace}/{name}"
            )
        return config_map

    def _replace(self, current: V1ConfigMap | None, desired: V1ConfigMap) -> V1ConfigMap:
        return self.resources.replace_config_map(
            self.coredns.namespace, self.coredns.configmap_name, desired
        )

    def _with_corefile(self, config_map: V1ConfigMap, text: str) -> V1ConfigMap:
        updated = copy.deepcopy(config_map)
        updated.data = {**(updated.data or {}), self.coredns.corefile_key: text}
        return updated

    def ensure_import(self) -> bool:
        """Ensure the directive is present. Returns True when the Corefile was written."""
        directive = self.coredns.import_statement
        fallback_used = False

        def mutate(current: V1ConfigMap | None) -> V1ConfigMap | None:
            nonlocal fallback_used
            if current is None:
                raise MalformedResourceError(
                    f"CoreDNS ConfigMap {self.coredns.namespace}/"
                    f"{self.coredns.configmap_name} not found"
                )
            edit = ensure_line(current.data[self.coredns.corefile_key], self._anchor, directive)
            if not edit.changed:
                return None
            fallback_used = not edit.anchored
            return self._with_corefile(current, edit.text)

        outcome = optimistic_update(
            read=lambda: self._read(missing_ok=False),
            mutate=mutate,
            write=self._replace,
            description="add import directive to the Corefile",
            resource="corefile",
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            sleep=self.sleep,
            logger=self.logger,
        )
        if not outcome.changed:
            self.logger.debug("Corefile already contains %r", directive)
            return False

        METRICS.config_drift_total.labels(drift_type="import_statement").inc()
        if fallback_used:
            self.logger.warning(
                "Server block matching %r not found in Corefile; appended %r at the end",
                self.coredns.server_block_pattern,
                directive,
            )
        else:
            self.logger.info("Added %r to the Corefile", directive)
        return True

    def remove_import(self) -> bool:
        """Remove every copy of the directive. Returns True when the Corefile was written."""
        directive = self.coredns.import_statement

        def mutate(current: V1ConfigMap | None) -> V1ConfigMap | None:
            if current is None:
                return None
            corefile = (current.data or {}).get(self.coredns.corefile_key)
            if corefile is None:
                return None
            edit = remove_line(corefile, directive)
            if not edit.changed:
                return None
            return self._with_corefile(current, edit.text)

        outcome = optimistic_update(
            read=lambda: self._read(missing_ok=True),
            mutate=mutate,
            write=self._replace,
            description="remove import directive from the Corefile",
            resource="corefile",
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            sleep=self.sleep,
            logger=self.logger,
        )
        if outcome.changed:
            self.logger.info("Removed %r from the Corefile", directive)
        else:
            self.logger.info("Import directive not found in the Corefile; already removed")
        return outcome.changed
