from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from k3dpilot.core.cluster.types import Node


class K3dPilotError(Exception):
    pass


class PreconditionError(K3dPilotError, ValueError):
    """Invalid topology or request, raised before any container is touched."""


class NodeFilterError(PreconditionError):
    pass


class ClusterNotFoundError(K3dPilotError):
    pass


class NodeNotFoundError(K3dPilotError):
    pass


class NetworkNotFoundError(K3dPilotError):
    pass


class NetworkNotEmptyError(K3dPilotError):
    """The network still has containers attached and cannot be removed."""


class IPAMExhaustedError(K3dPilotError):
    pass


class LoadbalancerConfigError(K3dPilotError):
    pass


class RuntimeOperationError(K3dPilotError):
    def __init__(self, operation: str, target: str, reason: BaseException | str):
        self.operation = operation
        self.target = target
        super().__init__(f'Failed to {operation} {target}: {reason}')


class NodeReadinessTimeoutError(K3dPilotError, TimeoutError):
    def __init__(self, node_name: str, message: str):
        self.node_name = node_name
        self.message = message
        super().__init__(f"Node '{node_name}' did not log '{message}' in time")


class NodeCrashLoopError(K3dPilotError):
    def __init__(self, node_name: str, restarts: int):
        self.node_name = node_name
        self.restarts = restarts
        super().__init__(f"Node '{node_name}' is in a crash loop (observed restarting {restarts} times)")


class MultiNodeError(K3dPilotError):
    """Aggregate of per-node failures collected by a best-effort loop."""

    def __init__(self, operation: str, failures: list[tuple[Node, BaseException]]):
        self.operation = operation
        self.failures = failures
        super().__init__(
            f'Failed to {operation} {len(failures)} nodes: Try to {operation} them manually '
            f'({", ".join(node.name for node, _ in failures)})'
        )

    def __len__(self) -> int:
        return len(self.failures)
