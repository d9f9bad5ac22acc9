from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from ipaddress import IPv4Address, IPv4Network
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from k3dpilot.core.config import (
    DEFAULT_API_HOST,
    DEFAULT_API_PORT,
    DEFAULT_LOADBALANCER_WORKER_CONNECTIONS,
    DEFAULT_OBJECT_NAME_PREFIX,
)

if TYPE_CHECKING:
    from k3dpilot.core.actions.base_node_hook_action import BaseNodeHookAction


class Role(StrEnum):
    SERVER = 'server'
    AGENT = 'agent'
    LOADBALANCER = 'loadbalancer'
    REGISTRY = 'registry'
    NONE = 'noRole'


CLUSTER_INTERNAL_ROLES = (Role.SERVER, Role.AGENT, Role.LOADBALANCER)


class Intent(StrEnum):
    CLUSTER_CREATE = 'cluster-create'
    CLUSTER_START = 'cluster-start'
    NODE_CREATE = 'node-create'
    NODE_START = 'node-start'
    ANY = 'any'


class NodeStatus(StrEnum):
    CREATED = 'created'
    RUNNING = 'running'
    RESTARTING = 'restarting'
    EXITED = 'exited'


class LifecycleStage(StrEnum):
    PRE_START = 'preStart'
    POST_START = 'postStart'


@dataclass(frozen=True)
class PortBinding:
    host_ip: str = ''
    host_port: str = ''


@dataclass
class KubeAPI:
    host: str = ''
    host_ip: str = DEFAULT_API_HOST
    host_port: str = DEFAULT_API_PORT

    @property
    def binding(self) -> PortBinding:
        return PortBinding(host_ip=self.host_ip, host_port=self.host_port)


@dataclass
class ServerOpts:
    is_init: bool = False
    kube_api: KubeAPI | None = None


@dataclass
class NodeIP:
    ip: IPv4Address | None = None
    static: bool = False


@dataclass
class NodeState:
    running: bool = False
    status: str = ''
    started: datetime | None = None


@dataclass(frozen=True)
class NodeHook:
    stage: LifecycleStage
    action: BaseNodeHookAction


@dataclass(eq=False)
class Node:
    name: str
    role: Role = Role.NONE
    image: str = ''
    cmd: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    # '<port>/<proto>' -> host bindings
    ports: dict[str, list[PortBinding]] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)
    runtime_labels: dict[str, str] = field(default_factory=dict)
    ip: NodeIP = field(default_factory=NodeIP)
    state: NodeState = field(default_factory=NodeState)
    server_opts: ServerOpts = field(default_factory=ServerOpts)
    restart: bool = False
    hook_actions: list[NodeHook] = field(default_factory=list)

    def __repr__(self) -> str:
        return f'Node(name={self.name!r}, role={self.role.value!r})'


@dataclass
class NetworkMember:
    name: str
    ip: IPv4Address


@dataclass
class IPAM:
    ip_prefix: IPv4Network | None = None
    # first host address of the prefix unless the runtime reports another one
    gateway: IPv4Address | None = None
    managed: bool = False
    ips_used: list[IPv4Address] = field(default_factory=list)


@dataclass
class ClusterNetwork:
    name: str = ''
    id: str = ''
    external: bool = False
    ipam: IPAM = field(default_factory=IPAM)
    members: list[NetworkMember] = field(default_factory=list)


class LoadbalancerSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    worker_connections: int = Field(default=DEFAULT_LOADBALANCER_WORKER_CONNECTIONS, alias='workerConnections')
    default_proxy_timeout: int | None = Field(default=None, alias='defaultProxyTimeout')


class LoadbalancerConfig(BaseModel):
    # '<port>/<proto>' -> backend node names
    ports: dict[str, list[str]] = Field(default_factory=dict)
    settings: LoadbalancerSettings = Field(default_factory=LoadbalancerSettings)


@dataclass
class Loadbalancer:
    node: Node
    config: LoadbalancerConfig = field(default_factory=LoadbalancerConfig)


@dataclass
class HostAlias:
    ip: str
    hostnames: list[str]


@dataclass(eq=False)
class Cluster:
    name: str
    network: ClusterNetwork = field(default_factory=ClusterNetwork)
    token: str = ''
    nodes: list[Node] = field(default_factory=list)
    init_node: Node | None = None
    server_loadbalancer: Loadbalancer | None = None
    image_volume: str = ''
    volumes: list[str] = field(default_factory=list)
    kube_api: KubeAPI = field(default_factory=KubeAPI)

    @property
    def has_loadbalancer(self) -> bool:
        return any(node.role == Role.LOADBALANCER for node in self.nodes)

    @property
    def server_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.role == Role.SERVER]

    @property
    def agent_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.role == Role.AGENT]


@dataclass
class ClusterCreateOpts:
    timeout: float | None = None
    disable_loadbalancer: bool = False
    disable_image_volume: bool = False
    wait_for_server: bool = True
    global_labels: dict[str, str] = field(default_factory=dict)
    global_env: list[str] = field(default_factory=list)
    node_hooks: list[NodeHook] = field(default_factory=list)


@dataclass
class ClusterStartOpts:
    timeout: float | None = None
    wait_for_server: bool = True
    intent: Intent = Intent.CLUSTER_START
    node_hooks: list[NodeHook] = field(default_factory=list)
    host_gateway_ip: str | None = None
    host_aliases: list[HostAlias] = field(default_factory=list)
    disable_coredns_patch: bool = False


@dataclass
class ClusterDeleteOpts:
    skip_registry_check: bool = False


def generate_node_name(cluster_name: str, role: Role, index: int) -> str:
    return f'{DEFAULT_OBJECT_NAME_PREFIX}-{cluster_name}-{role.value}-{index}'
