import asyncio
from datetime import datetime
from types import MappingProxyType

from k3dpilot.core.cluster.types import Intent, Node, NodeStatus, Role
from k3dpilot.core.config import NODE_WAIT_RESTART_WARN_SECONDS
from k3dpilot.core.exceptions import NodeCrashLoopError, NodeReadinessTimeoutError
from k3dpilot.core.runtimes.base_runtime import BaseRuntime
from k3dpilot.core.utils import setup_logger

# the initializing server is a server node with is_init set, it only exists as a lookup key here
INIT_SERVER_ROLE = 'initServer'

# an init server on first boot has no etcd quorum yet, so 'k3s is up and running' would never show up
READY_LOG_MESSAGES_BY_ROLE_AND_INTENT = MappingProxyType({
    INIT_SERVER_ROLE: MappingProxyType({
        Intent.CLUSTER_CREATE: 'Containerd is now running',
        Intent.CLUSTER_START: 'Running kube-apiserver',
        Intent.ANY: 'Running kube-apiserver',
    }),
    Role.SERVER: MappingProxyType({Intent.ANY: 'k3s is up and running'}),
    Role.AGENT: MappingProxyType({Intent.ANY: 'Successfully registered node'}),
    Role.LOADBALANCER: MappingProxyType({Intent.ANY: 'start worker processes'}),
    Role.REGISTRY: MappingProxyType({Intent.ANY: 'listening on'}),
})

_logger = setup_logger('NodeReadiness')


def get_ready_log_message(node: Node, intent: Intent) -> str:
    """Look up the log line that marks the node as ready; empty if there is none."""
    role: str = node.role
    if node.role == Role.SERVER and node.server_opts.is_init:
        role = INIT_SERVER_ROLE

    messages = READY_LOG_MESSAGES_BY_ROLE_AND_INTENT.get(role)
    if messages is not None:
        message = messages.get(intent) or messages.get(Intent.ANY)
        if message:
            return message

    _logger.warning(f'error looking up ready log message for role {role} and intent {intent}: not defined')
    return ''


async def wait_for_log_message(
    runtime: BaseRuntime,
    node: Node,
    message: str,
    since: datetime | None = None,
    *,
    timeout: float | None = None,
    poll_interval: float = 0.5,
    settle_delay: float = 0.5,
    backoff_limit: int = 10,
) -> None:
    """Poll the node's logs until `message` shows up.

    Raises NodeReadinessTimeoutError if `timeout` elapses first and
    NodeCrashLoopError once the node was seen restarting more than
    `backoff_limit` times. Cancellation of the calling task is the only other
    way out.
    """
    _logger.debug(f"Node '{node.name}' waiting for log message '{message}' since '{since}'")

    loop = asyncio.get_running_loop()
    restarts = 0
    restarting_since: float | None = None
    warned = False

    scope = asyncio.timeout(timeout)
    try:
        async with scope:
            while True:
                await asyncio.sleep(0)

                output = await runtime.get_node_logs(node, since)
                if isinstance(output, bytes):
                    output = output.decode('utf-8', errors='replace')

                if output and message in output:
                    break

                running, status = await runtime.get_node_status(node)
                if running and status == NodeStatus.RESTARTING:
                    restarts += 1
                    if restarts > backoff_limit:
                        raise NodeCrashLoopError(node.name, restarts)

                    if restarting_since is None:
                        restarting_since = loop.time()
                    elif not warned and loop.time() - restarting_since > NODE_WAIT_RESTART_WARN_SECONDS:
                        _logger.warning(
                            f"Node '{node.name}' is restarting for more than {NODE_WAIT_RESTART_WARN_SECONDS}s now. "
                            'Possibly it will recover soon (e.g. when it is waiting to join). '
                            'Consider using a timeout to avoid waiting forever in a restart loop.'
                        )
                        warned = True

                # avoid hammering the runtime's log API
                await asyncio.sleep(poll_interval)
    except TimeoutError as e:
        if scope.expired():
            raise NodeReadinessTimeoutError(node.name, message) from e
        raise

    _logger.debug(f"Finished waiting for log message '{message}' from node '{node.name}'")

    await asyncio.sleep(settle_delay)
