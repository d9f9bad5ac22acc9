# group[:subset][:suffix], e.g. server:0, agent:1-2, agent:*:proxy, all
import re
from dataclasses import dataclass
from types import MappingProxyType

from k3dpilot.core.cluster.types import Node, Role
from k3dpilot.core.exceptions import NodeFilterError
from k3dpilot.core.utils import setup_logger

NODE_FILTER_GROUP_ALL = 'all'
NODE_FILTER_GROUP_LOADBALANCER = 'loadbalancer'

NODE_FILTER_SUFFIX_NONE = 'nosuffix'
NODE_FILTER_MAP_KEY_ALL = 'all'

GROUP_ROLES = MappingProxyType({
    'server': Role.SERVER,
    'servers': Role.SERVER,
    'agent': Role.AGENT,
    'agents': Role.AGENT,
    'loadbalancer': Role.LOADBALANCER,
})

_FILTER_REGEXP = re.compile(
    r'^(?P<group>servers?|agents?|loadbalancer|all)'
    r'(?::(?P<subset>(?P<subsetList>\d+(?:,\d+)*)|(?P<subsetRange>\d*-\d*)|(?P<subsetWildcard>\*)))?'
    r'(?::(?P<suffix>[A-Za-z]+))?$'
)

_logger = setup_logger('NodeFilter')


@dataclass(frozen=True)
class NodeFilter:
    raw: str
    group: str
    subset: str | None = None
    suffix: str | None = None

    @property
    def role(self) -> Role | None:
        return GROUP_ROLES.get(self.group)


def parse_node_filter(node_filter: str) -> NodeFilter:
    match = _FILTER_REGEXP.match(node_filter.strip())
    if match is None:
        raise NodeFilterError(f"Failed to parse node filter: invalid format or empty subset in '{node_filter}'")

    return NodeFilter(
        raw=node_filter,
        group=match.group('group'),
        subset=match.group('subset'),
        suffix=match.group('suffix'),
    )


def _resolve_indices(node_filter: NodeFilter, size: int) -> range | list[int]:
    subset = node_filter.subset

    if subset is None or subset == '*':
        return range(size)

    if '-' in subset:
        start_raw, end_raw = subset.split('-', 1)

        start = int(start_raw) if start_raw else 0
        end = int(end_raw) if end_raw else size - 1

        if start_raw and (start < 0 or start >= size):
            raise NodeFilterError(
                f'Invalid subset range: start {start} < 0 or >= number of available nodes ({size}) '
                f"in '{node_filter.raw}'"
            )
        if end_raw and (end < start or end >= size):
            raise NodeFilterError(
                f'Invalid subset range: end {end} < start or >= number of available nodes ({size}) '
                f"in '{node_filter.raw}'"
            )

        return range(start, end + 1)

    indices = [int(index) for index in subset.split(',')]
    for index in indices:
        if index < 0 or index >= size:
            raise NodeFilterError(
                f"Index out of range: index '{index}' < 0 or >= number of available nodes ({size}) "
                f"in filter '{node_filter.raw}'"
            )

    return indices


def _resolve(nodes: list[Node], node_filters: list[NodeFilter]) -> list[Node]:
    if any(f.group == NODE_FILTER_GROUP_ALL for f in node_filters):
        if len(node_filters) > 1:
            _logger.warning(f"Node filter 'all' set, but more were specified in {[f.raw for f in node_filters]}")
        return list(nodes)

    server_nodes = [node for node in nodes if node.role == Role.SERVER]
    agent_nodes = [node for node in nodes if node.role == Role.AGENT]
    loadbalancer = next((node for node in nodes if node.role == Role.LOADBALANCER), None)

    filtered: list[Node] = []
    seen: set[Node] = set()

    def _add(node: Node) -> None:
        if node not in seen:
            seen.add(node)
            filtered.append(node)

    for node_filter in node_filters:
        if node_filter.role == Role.LOADBALANCER:
            if loadbalancer is None:
                raise NodeFilterError(
                    f"Node filter '{node_filter.raw}' targets a node that does not exist (disabled?)"
                )
            _add(loadbalancer)
            continue

        group_nodes = server_nodes if node_filter.role == Role.SERVER else agent_nodes
        for index in _resolve_indices(node_filter, len(group_nodes)):
            _add(group_nodes[index])

    _logger.debug(f'Filtered {len(nodes)} nodes with {[f.raw for f in node_filters]}: {[n.name for n in filtered]}')

    return filtered


def filter_nodes(nodes: list[Node], filters: list[str]) -> list[Node]:
    """Resolve node filters against a node list, keeping first-seen order without duplicates."""
    if not filters or not filters[0]:
        _logger.warning('No node filter specified')
        return list(nodes)

    return _resolve(nodes, [parse_node_filter(f) for f in filters])


def filter_nodes_with_suffix(nodes: list[Node], filters: list[str], *allowed_suffixes: str) -> dict[str, list[Node]]:
    """Resolve filters per suffix, plus NODE_FILTER_MAP_KEY_ALL holding their union."""
    if not filters:
        raise NodeFilterError('No node filters specified')

    buckets: dict[str, list[NodeFilter]] = {}
    for raw in filters:
        node_filter = parse_node_filter(raw)
        suffix = node_filter.suffix or NODE_FILTER_SUFFIX_NONE

        if node_filter.suffix in (NODE_FILTER_MAP_KEY_ALL, NODE_FILTER_SUFFIX_NONE):
            raise NodeFilterError(f"Node filter '{raw}' uses reserved suffix '{node_filter.suffix}'")

        if allowed_suffixes and suffix != NODE_FILTER_SUFFIX_NONE and suffix not in allowed_suffixes:
            raise NodeFilterError(
                f"Node filter '{raw}' has unsupported suffix '{suffix}', allowed: {', '.join(allowed_suffixes)}"
            )

        buckets.setdefault(suffix, []).append(node_filter)

    result: dict[str, list[Node]] = {NODE_FILTER_MAP_KEY_ALL: []}
    for suffix, node_filters in buckets.items():
        resolved = _resolve(nodes, node_filters)
        result[suffix] = resolved

        for node in resolved:
            if node not in result[NODE_FILTER_MAP_KEY_ALL]:
                result[NODE_FILTER_MAP_KEY_ALL].append(node)

    return result


def filter_nodes_by_role(nodes: list[Node], role: Role) -> list[Node]:
    return [node for node in nodes if node.role == role]
