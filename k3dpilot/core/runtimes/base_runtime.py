from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING

from k3dpilot.core.utils import setup_logger

if TYPE_CHECKING:
    from k3dpilot.core.cluster.types import ClusterNetwork, Node


class BaseRuntime(ABC):
    """Container runtime capability consumed by the orchestrator.

    Implementations translate these calls to a concrete engine (docker,
    containerd, ...). Every call is a coroutine so that task cancellation and
    deadlines propagate into it.

    Error contract:
        - delete_network raises NetworkNotEmptyError while containers are attached
        - lookups raise NetworkNotFoundError / NodeNotFoundError for missing objects
    """

    name: str

    def __init__(self):
        self._logger = setup_logger(f'{self.name.capitalize()}Runtime')

    # networks

    @abstractmethod
    async def create_network_if_not_present(self, network: ClusterNetwork) -> tuple[ClusterNetwork, bool]:
        """Return the (possibly created) network and whether it existed before."""

    @abstractmethod
    async def get_network(self, network: ClusterNetwork) -> ClusterNetwork:
        pass

    @abstractmethod
    async def delete_network(self, name: str) -> None:
        pass

    @abstractmethod
    async def get_nodes_in_network(self, name: str) -> list[Node]:
        pass

    @abstractmethod
    async def connect_node_to_network(self, node: Node, network_name: str) -> None:
        pass

    @abstractmethod
    async def disconnect_node_from_network(self, node: Node, network_name: str) -> None:
        pass

    # nodes

    @abstractmethod
    async def create_node(self, node: Node) -> None:
        pass

    @abstractmethod
    async def start_node(self, node: Node) -> None:
        pass

    @abstractmethod
    async def stop_node(self, node: Node) -> None:
        pass

    @abstractmethod
    async def delete_node(self, node: Node) -> None:
        pass

    @abstractmethod
    async def get_node(self, node: Node) -> Node:
        pass

    @abstractmethod
    async def get_nodes_by_label(self, labels: dict[str, str]) -> list[Node]:
        pass

    @abstractmethod
    async def get_node_logs(self, node: Node, since: datetime | None = None) -> str:
        """Return all log output of the node written after `since`."""

    @abstractmethod
    async def get_node_status(self, node: Node) -> tuple[bool, str]:
        """Return (running, status) of the node's container."""

    @abstractmethod
    async def exec_in_node(self, node: Node, cmd: list[str]) -> str:
        pass

    @abstractmethod
    async def write_to_node(self, node: Node, content: bytes, dest: str, mode: int) -> None:
        pass

    # volumes

    @abstractmethod
    async def create_volume(self, name: str, labels: dict[str, str]) -> None:
        pass

    @abstractmethod
    async def delete_volume(self, name: str) -> None:
        pass

    @abstractmethod
    async def get_volumes_by_label(self, labels: dict[str, str]) -> list[str]:
        pass
