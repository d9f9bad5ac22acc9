from datetime import datetime
from ipaddress import IPv4Network

import pytest

from k3dpilot.core.cluster.network import NetworkManager
from k3dpilot.core.cluster.orchestrator import ClusterOrchestrator
from k3dpilot.core.cluster.readiness import READY_LOG_MESSAGES_BY_ROLE_AND_INTENT
from k3dpilot.core.cluster.types import ClusterNetwork, NetworkMember, Node, NodeStatus, Role, ServerOpts
from k3dpilot.core.config import Settings
from k3dpilot.core.exceptions import NetworkNotEmptyError, NetworkNotFoundError, NodeNotFoundError
from k3dpilot.core.runtimes.base_runtime import BaseRuntime

ALL_READY_MESSAGES = '\n'.join(
    message for messages in READY_LOG_MESSAGES_BY_ROLE_AND_INTENT.values() for message in messages.values()
)


class FakeRuntime(BaseRuntime):
    """In-memory runtime recording every call as (operation, target)."""

    name = 'fake'

    def __init__(self):
        super().__init__()
        self.calls: list[tuple[str, str]] = []
        self.networks: dict[str, ClusterNetwork] = {}
        self.nodes: dict[str, Node] = {}
        self.volumes: dict[str, dict[str, str]] = {}
        self.written: dict[tuple[str, str], bytes] = {}
        self.exec_commands: list[tuple[str, list[str]]] = []
        self.log_reads: dict[str, int] = {}

        # node name -> successive log outputs, the last one repeats
        self.logs: dict[str, list[str]] = {}
        # node name -> successive (running, status), the last one repeats
        self.statuses: dict[str, list[tuple[bool, str]]] = {}

        self._failures: dict[tuple[str, str], list] = {}
        self._subnets = 0
        self._ips = 0

    def fail(self, operation: str, target: str, error: BaseException, times: int | None = None) -> None:
        self._failures[(operation, target)] = [error, times]

    def _record(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))

        failure = self._failures.get((operation, target))
        if failure is None:
            return

        error, times = failure
        if times is not None:
            if times <= 0:
                return
            failure[1] = times - 1
        raise error

    def calls_of(self, operation: str) -> list[str]:
        return [target for op, target in self.calls if op == operation]

    @staticmethod
    def _next(sequence: list, default):
        if not sequence:
            return default
        return sequence.pop(0) if len(sequence) > 1 else sequence[0]

    # networks

    async def create_network_if_not_present(self, network: ClusterNetwork) -> tuple[ClusterNetwork, bool]:
        self._record('create_network', network.name)

        if network.name in self.networks:
            return self.networks[network.name], True

        if network.ipam.ip_prefix is None:
            self._subnets += 1
            network.ipam.ip_prefix = IPv4Network(f'172.{17 + self._subnets}.0.0/16')
        network.id = f'net-{network.name}'
        self.networks[network.name] = network

        return network, False

    async def get_network(self, network: ClusterNetwork) -> ClusterNetwork:
        self._record('get_network', network.name)

        if network.name not in self.networks:
            raise NetworkNotFoundError(network.name)

        stored = self.networks[network.name]
        stored.members = [
            NetworkMember(name=node.name, ip=node.ip.ip)
            for node in self.nodes.values()
            if network.name in node.networks and node.ip.ip is not None
        ]
        return stored

    async def delete_network(self, name: str) -> None:
        self._record('delete_network', name)

        if any(name in node.networks for node in self.nodes.values()):
            raise NetworkNotEmptyError(name)
        self.networks.pop(name, None)

    async def get_nodes_in_network(self, name: str) -> list[Node]:
        self._record('get_nodes_in_network', name)
        return [node for node in self.nodes.values() if name in node.networks]

    async def connect_node_to_network(self, node: Node, network_name: str) -> None:
        self._record('connect_node_to_network', node.name)
        node.networks.append(network_name)

    async def disconnect_node_from_network(self, node: Node, network_name: str) -> None:
        self._record('disconnect_node_from_network', node.name)
        if network_name in node.networks:
            node.networks.remove(network_name)

    # nodes

    async def create_node(self, node: Node) -> None:
        self._record('create_node', node.name)

        if node.ip.ip is None and node.networks and node.networks[0] in self.networks:
            self._ips += 1
            node.ip.ip = self.networks[node.networks[0]].ipam.ip_prefix[100 + self._ips]
        self.nodes[node.name] = node

    async def start_node(self, node: Node) -> None:
        self._record('start_node', node.name)

    async def stop_node(self, node: Node) -> None:
        self._record('stop_node', node.name)

    async def delete_node(self, node: Node) -> None:
        self._record('delete_node', node.name)

        if node.name not in self.nodes:
            raise NodeNotFoundError(node.name)
        del self.nodes[node.name]

    async def get_node(self, node: Node) -> Node:
        self._record('get_node', node.name)

        if node.name not in self.nodes:
            raise NodeNotFoundError(node.name)
        return self.nodes[node.name]

    async def get_nodes_by_label(self, labels: dict[str, str]) -> list[Node]:
        self._record('get_nodes_by_label', ','.join(f'{k}={v}' for k, v in labels.items()))
        return [
            node for node in self.nodes.values()
            if all(node.runtime_labels.get(key) == value for key, value in labels.items())
        ]

    async def get_node_logs(self, node: Node, since: datetime | None = None) -> str:
        self._record('get_node_logs', node.name)
        self.log_reads[node.name] = self.log_reads.get(node.name, 0) + 1
        return self._next(self.logs.get(node.name, []), ALL_READY_MESSAGES)

    async def get_node_status(self, node: Node) -> tuple[bool, str]:
        return self._next(self.statuses.get(node.name, []), (True, NodeStatus.RUNNING))

    async def exec_in_node(self, node: Node, cmd: list[str]) -> str:
        self._record('exec_in_node', node.name)
        self.exec_commands.append((node.name, cmd))

        if cmd[0] == 'cat' and (node.name, cmd[1]) in self.written:
            return self.written[(node.name, cmd[1])].decode('utf-8')
        return ''

    async def write_to_node(self, node: Node, content: bytes, dest: str, mode: int) -> None:
        self._record('write_to_node', node.name)
        self.written[(node.name, dest)] = content

    # volumes

    async def create_volume(self, name: str, labels: dict[str, str]) -> None:
        self._record('create_volume', name)
        self.volumes[name] = labels

    async def delete_volume(self, name: str) -> None:
        self._record('delete_volume', name)
        self.volumes.pop(name, None)

    async def get_volumes_by_label(self, labels: dict[str, str]) -> list[str]:
        return [
            name for name, volume_labels in self.volumes.items()
            if all(volume_labels.get(key) == value for key, value in labels.items())
        ]


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def settings():
    return Settings(
        node_wait_backoff_limit=3,
        node_wait_poll_interval=0,
        node_wait_settle_delay=0,
        server_create_delay=0,
    )


@pytest.fixture
def orchestrator(runtime, settings):
    return ClusterOrchestrator(runtime, settings)


@pytest.fixture
def network_manager(runtime):
    return NetworkManager(runtime)


@pytest.fixture
def make_node():
    def _make_node(name: str, role: Role = Role.SERVER, is_init: bool = False, **kwargs) -> Node:
        return Node(name=name, role=role, server_opts=ServerOpts(is_init=is_init), **kwargs)

    return _make_node


@pytest.fixture
def topology(make_node):
    """3 servers, 3 agents and a loadbalancer, in that order."""
    servers = [make_node(f'k3d-demo-server-{i}', Role.SERVER, is_init=i == 0) for i in range(3)]
    agents = [make_node(f'k3d-demo-agent-{i}', Role.AGENT) for i in range(3)]
    loadbalancer = make_node('k3d-demo-serverlb', Role.LOADBALANCER)

    return servers + agents + [loadbalancer]
