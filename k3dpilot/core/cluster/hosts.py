import ipaddress

from k3dpilot.core.cluster.types import HostAlias
from k3dpilot.core.exceptions import PreconditionError
from k3dpilot.core.utils import validate_hostname

_MAX_DNS_NAME_LENGTH = 253


def validate_dns_name(name: str) -> None:
    if len(name) > _MAX_DNS_NAME_LENGTH:
        raise PreconditionError(f"Hostname '{name}' is longer than {_MAX_DNS_NAME_LENGTH} characters")

    for label in name.split('.'):
        validate_hostname(label)


def validate_host_alias(alias: HostAlias) -> None:
    try:
        ipaddress.ip_address(alias.ip)
    except ValueError as e:
        raise PreconditionError(f"Invalid IP '{alias.ip}' in host alias") from e

    if not alias.hostnames:
        raise PreconditionError(f"Host alias for '{alias.ip}' has no hostnames")

    for hostname in alias.hostnames:
        try:
            validate_dns_name(hostname)
        except PreconditionError as e:
            raise PreconditionError(f"Invalid host alias for '{alias.ip}'. {e}") from e


def add_host_aliases(content: str, host_aliases: list[HostAlias]) -> str:
    """Return the hosts file content with each alias hostname mapped to its IP.

    A hostname is moved off any other address it was listed under and lines left
    without hostnames are dropped. Untouched lines are kept verbatim.
    """
    # each entry is [source line or None once rewritten, ip, *hostnames]
    entries: list[list[str | None]] = []
    for line in content.splitlines():
        fields = line.split('#', 1)[0].split()
        entries.append([line, *fields])

    for alias in host_aliases:
        ip = str(ipaddress.ip_address(alias.ip))
        target: list[str | None] | None = None

        for entry in entries:
            if len(entry) < 2:
                continue
            if entry[1] == ip:
                target = target or entry
                continue
            names = [name for name in entry[2:] if name not in alias.hostnames]
            if len(names) != len(entry) - 2:
                entry[:] = [None, entry[1], *names]

        if target is None:
            target = [None, ip]
            entries.append(target)

        for hostname in alias.hostnames:
            if hostname not in target[2:]:
                target.append(hostname)
                target[0] = None

    lines = []
    for entry in entries:
        if entry[0] is not None:
            lines.append(entry[0])
        elif len(entry) > 2:
            lines.append(' '.join(entry[1:]))

    return '\n'.join(lines) + '\n'
