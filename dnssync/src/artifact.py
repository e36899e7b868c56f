from __future__ import annotations

from collections.abc import Iterable

from dnssync.src.config import CONTROLLER_NAME

HEADER_LINES = (
    f"# Auto-generated by {CONTROLLER_NAME}. Do not edit; changes are overwritten.",
    "# One rewrite rule per Ingress host in scope.",
)


def normalize_destination(destination: str) -> str:
    """Return *destination* as a fully-qualified name with exactly one trailing dot."""
    return destination.strip().rstrip(".") + "."


def rewrite_rule(host: str, destination: str) -> str:
    return f"rewrite name exact {host} {normalize_destination(destination)}"


def generate_rewrite_rules(hosts: Iterable[str], destination: str) -> str:
    """Render the CoreDNS server snippet for *hosts*.

    Lines follow the order of *hosts*; pass an ordered sequence when the
    output is compared across passes.  An empty host list yields only the
    header.
    """
    lines = list(HEADER_LINES)
    lines.append("")
    lines.extend(rewrite_rule(host, destination) for host in hosts)
    return "\n".join(lines) + "\n"


def parse_rewrite_hosts(text: str) -> set[str]:
    """Return the hosts that have a rewrite rule in a rendered snippet."""
    hosts: set[str] = set()
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 5 and parts[:3] == ["rewrite", "name", "exact"]:
            hosts.add(parts[3])
    return hosts
