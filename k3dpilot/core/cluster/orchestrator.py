import asyncio
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from k3dpilot.core.actions.rewrite_file_action import RewriteFileAction

from k3dpilot.core.cluster import labels as k3d_labels
from k3dpilot.core.cluster.hosts import add_host_aliases, validate_host_alias
from k3dpilot.core.cluster.loadbalancer import (
    API_PORT_KEY,
    attach_config_hook,
    generate_loadbalancer_config,
    load_loadbalancer_config,
    prepare_loadbalancer,
)
from k3dpilot.core.cluster.network import NetworkManager
from k3dpilot.core.cluster.readiness import get_ready_log_message, wait_for_log_message
from k3dpilot.core.cluster.state import cluster_from_nodes, group_clusters
from k3dpilot.core.cluster.types import (
    Cluster,
    ClusterCreateOpts,
    ClusterDeleteOpts,
    ClusterStartOpts,
    HostAlias,
    Intent,
    LifecycleStage,
    Node,
    NodeHook,
    NodeState,
    NodeStatus,
    Role,
    generate_node_name,
)
from k3dpilot.core.config import (
    COREDNS_PATCH_RETRIES,
    COREDNS_PATCH_RETRY_WAIT_SECONDS,
    DEFAULT_API_PORT,
    DEFAULT_ETC_HOSTS_PATH,
    DEFAULT_IMAGE_VOLUME_MOUNT_PATH,
    DEFAULT_K3D_INTERNAL_HOST_RECORD,
    DEFAULT_LOADBALANCER_CONFIG_PATH,
    DEFAULT_NODE_ENV,
    DEFAULT_OBJECT_NAME_PREFIX,
    DEFAULT_RUNTIME_NETWORK,
    DO_NOT_COPY_SERVER_FLAGS,
    HOST_NETWORK,
    K3S_ENV_CLUSTER_CONNECT_URL,
    K3S_ENV_CLUSTER_TOKEN,
    Settings,
)
from k3dpilot.core.exceptions import (
    ClusterNotFoundError,
    K3dPilotError,
    LoadbalancerConfigError,
    MultiNodeError,
    NodeNotFoundError,
    NodeReadinessTimeoutError,
    PreconditionError,
    RuntimeOperationError,
)
from k3dpilot.core.runtimes.base_runtime import BaseRuntime
from k3dpilot.core.template_loader import template_loader
from k3dpilot.core.utils import check_cluster_name, generate_token, run_concurrently, setup_logger

_RUNTIME_ROLES = frozenset((Role.SERVER, Role.AGENT, Role.LOADBALANCER, Role.REGISTRY))


class ClusterOrchestrator:
    """Creates, starts, stops and deletes clusters on a single runtime."""

    def __init__(self, runtime: BaseRuntime, settings: Settings | None = None) -> None:
        self._logger = setup_logger('ClusterOrchestrator')
        self._runtime = runtime
        self._settings = settings or Settings()
        self._networks = NetworkManager(runtime)

    @contextmanager
    def _runtime_operation(self, operation: str, target: str) -> Iterator[None]:
        try:
            yield
        except K3dPilotError:
            raise
        except Exception as e:
            self._logger.exception(f'Failed to {operation} {target}: {e}', exc_info=False)
            raise RuntimeOperationError(operation, target, e) from e

    # validation

    def _validate(self, cluster: Cluster) -> None:
        check_cluster_name(cluster.name)

        init_nodes = [node for node in cluster.server_nodes if node.server_opts.is_init]

        if cluster.init_node is not None:
            if cluster.init_node not in cluster.nodes:
                raise PreconditionError(
                    f"Init node '{cluster.init_node.name}' is not a node of cluster '{cluster.name}'"
                )
            if cluster.init_node.role != Role.SERVER:
                raise PreconditionError(f"Init node '{cluster.init_node.name}' must be a server node")
            if cluster.init_node not in init_nodes:
                cluster.init_node.server_opts.is_init = True
                init_nodes.append(cluster.init_node)

        if len(init_nodes) > 1:
            raise PreconditionError(
                f'Only one init node is allowed, got {len(init_nodes)}: {", ".join(n.name for n in init_nodes)}'
            )
        if init_nodes:
            cluster.init_node = init_nodes[0]

        servers = cluster.server_nodes
        external_datastore = any(arg.startswith('--datastore-endpoint') for node in servers for arg in node.args)
        if len(servers) > 1 and cluster.init_node is None and not external_datastore:
            raise PreconditionError(
                f'{len(servers)} server nodes need an init node or an external datastore to form a cluster'
            )

        network = cluster.network
        if network.external and not network.name:
            raise PreconditionError('Failed to use external network because no name was specified')
        if network.external and network.ipam.ip_prefix is not None:
            raise PreconditionError('Cannot specify a subnet for an existing network')
        if network.name == HOST_NETWORK and len(cluster.nodes) > 1:
            raise PreconditionError('Only one server node supported when using host network')

    def _warn_on_two_servers(self, cluster: Cluster) -> None:
        if len(cluster.server_nodes) == 2:
            self._logger.warning(
                "You're running 2 server nodes: Please consider creating at least 3 to achieve etcd quorum & "
                'fault tolerance'
            )

    # preparation

    async def _prepare_network(self, cluster: Cluster, labels: dict[str, str]) -> None:
        if not cluster.network.name:
            cluster.network.name = f'{DEFAULT_OBJECT_NAME_PREFIX}-{cluster.name}'

        with self._runtime_operation('create cluster network', cluster.network.name):
            network, existed = await self._networks.create_network_if_not_present(cluster.network)

        cluster.network = network

        labels[k3d_labels.LABEL_NETWORK_ID] = network.id
        labels[k3d_labels.LABEL_NETWORK] = network.name
        labels[k3d_labels.LABEL_NETWORK_IP_RANGE] = str(network.ipam.ip_prefix) if network.ipam.ip_prefix else ''
        # a network we did not create is left alone on delete
        labels[k3d_labels.LABEL_NETWORK_EXTERNAL] = str(network.external or existed).lower()

    async def prepare_image_volume(self, cluster: Cluster, labels: dict[str, str]) -> str:
        """Create the shared image volume and mount it into every server and agent."""
        name = f'{DEFAULT_OBJECT_NAME_PREFIX}-{cluster.name}-images'

        with self._runtime_operation('create image volume', name):
            await self._runtime.create_volume(
                name, {**k3d_labels.DEFAULT_RUNTIME_LABELS, k3d_labels.LABEL_CLUSTER_NAME: cluster.name}
            )

        labels[k3d_labels.LABEL_IMAGE_VOLUME] = name
        cluster.image_volume = name
        if name not in cluster.volumes:
            cluster.volumes.append(name)

        for node in cluster.nodes:
            if node.role in (Role.SERVER, Role.AGENT):
                node.volumes.append(f'{name}:{DEFAULT_IMAGE_VOLUME_MOUNT_PATH}')

        return name

    def _setup_node(
        self, cluster: Cluster, node: Node, labels: dict[str, str], env: list[str], connection_url: str
    ) -> None:
        node.runtime_labels = {**node.runtime_labels, **labels}
        node.networks = [cluster.network.name]
        node.restart = True

        if node.role not in (Role.SERVER, Role.AGENT):
            return

        node.image = node.image or self._settings.k3s_image
        node.env.extend(env)

        if node.role == Role.SERVER:
            if cluster.network.ipam.managed:
                ip = self._networks.allocate_ip(cluster.network)
                node.ip.ip = ip
                node.ip.static = True
                node.runtime_labels[k3d_labels.LABEL_NODE_STATIC_IP] = str(ip)

            node.server_opts.kube_api = cluster.kube_api

            if cluster.init_node is not None and node is not cluster.init_node:
                node.env.append(f'{K3S_ENV_CLUSTER_CONNECT_URL}={connection_url}')
                node.runtime_labels[k3d_labels.LABEL_SERVER_IS_INIT] = 'false'
        else:
            node.env.append(f'{K3S_ENV_CLUSTER_CONNECT_URL}={connection_url}')

    # single node operations

    async def _create_node(self, node: Node) -> None:
        node.runtime_labels = k3d_labels.fill_runtime_labels(node.runtime_labels, node.role)

        for variable in DEFAULT_NODE_ENV:
            if variable not in node.env:
                node.env.append(variable)

        if node.role == Role.AGENT and node.cmd[:1] != ['agent']:
            node.cmd = ['agent', *node.cmd]
        elif node.role == Role.SERVER:
            if not node.cmd:
                node.cmd = ['server']

            kube_api = node.server_opts.kube_api
            if kube_api is not None:
                node.runtime_labels[k3d_labels.LABEL_SERVER_API_HOST] = kube_api.host
                node.runtime_labels[k3d_labels.LABEL_SERVER_API_HOST_IP] = kube_api.host_ip
                node.runtime_labels[k3d_labels.LABEL_SERVER_API_PORT] = kube_api.host_port

                if kube_api.host and kube_api.host not in node.args:
                    node.args.extend(['--tls-san', kube_api.host])

        self._logger.info(f"Creating node '{node.name}'")
        with self._runtime_operation('create node', node.name):
            await self._runtime.create_node(node)

        node.state = NodeState(status=NodeStatus.CREATED)
        self._logger.debug(f"Created node '{node.name}'")

    async def _run_hooks(self, node: Node, hooks: list[NodeHook], stage: LifecycleStage) -> None:
        for hook in hooks:
            if hook.stage != stage or not hook.action.condition:
                continue
            self._logger.debug(f"Node {node.name}: executing {stage} action '{hook.action.name}'")
            with self._runtime_operation(f"run {stage} action '{hook.action.name}' on", node.name):
                await hook.action.run(self._runtime, node)

    async def _start_node(self, node: Node, hooks: list[NodeHook]) -> None:
        if node.state.running:
            self._logger.debug(f"Node '{node.name}' is already running")
            return

        node_hooks = [*node.hook_actions, *hooks]

        await self._run_hooks(node, node_hooks, LifecycleStage.PRE_START)

        started = datetime.now(UTC)
        self._logger.info(f"Starting node '{node.name}'")
        with self._runtime_operation('start node', node.name):
            await self._runtime.start_node(node)

        node.state = NodeState(running=True, status=NodeStatus.RUNNING, started=started)

        await self._run_hooks(node, node_hooks, LifecycleStage.POST_START)

    async def _wait_for_node(self, node: Node, intent: Intent, deadline: asyncio.Timeout | None) -> None:
        message = get_ready_log_message(node, intent)
        if not message:
            return

        try:
            await wait_for_log_message(
                self._runtime,
                node,
                message,
                node.state.started,
                poll_interval=self._settings.node_wait_poll_interval,
                settle_delay=self._settings.node_wait_settle_delay,
                backoff_limit=self._settings.node_wait_backoff_limit,
            )
        except asyncio.CancelledError as e:
            # the operation's deadline fired while we were waiting
            if deadline is not None and deadline.expired():
                raise NodeReadinessTimeoutError(node.name, message) from e
            raise

    async def _start_and_wait(
        self, node: Node, hooks: list[NodeHook], wait: bool, intent: Intent, deadline: asyncio.Timeout | None
    ) -> None:
        await self._start_node(node, hooks)
        if wait:
            await self._wait_for_node(node, intent, deadline)

    async def _pause_between_servers(self) -> None:
        # servers registering at the same time race each other in etcd
        await asyncio.sleep(self._settings.server_create_delay)

    async def _best_effort(
        self, operation: str, nodes: list[Node], func: Callable[[Node], Awaitable[None]]
    ) -> MultiNodeError | None:
        failures: list[tuple[Node, BaseException]] = []

        for node in nodes:
            try:
                await func(node)
            except Exception as e:
                self._logger.warning(f"Failed to {operation} node '{node.name}': Try to {operation} it manually ({e})")
                failures.append((node, e))

        return MultiNodeError(operation, failures) if failures else None

    # cluster operations

    async def create(self, cluster: Cluster, opts: ClusterCreateOpts | None = None) -> None:
        """Create all containers of the cluster.

        Only the init server is started here since the other servers may only be
        created once it is ready. Everything else is started by `start`.
        """
        opts = opts or ClusterCreateOpts()

        self._logger.info(f"Creating cluster '{cluster.name}'")
        self._validate(cluster)

        labels = dict(opts.global_labels)
        env = list(opts.global_env)

        async with asyncio.timeout(opts.timeout) as deadline:
            await self._prepare_network(cluster, labels)

            if not opts.disable_image_volume:
                await self.prepare_image_volume(cluster, labels)

            if not cluster.token:
                cluster.token = generate_token()
            labels[k3d_labels.LABEL_CLUSTER_TOKEN] = cluster.token
            labels[k3d_labels.LABEL_CLUSTER_NAME] = cluster.name
            env.append(f'{K3S_ENV_CLUSTER_TOKEN}={cluster.token}')

            # everyone joins through the init server, or the first server if there is none
            join_target = cluster.init_node or next(iter(cluster.server_nodes), None)
            join_name = join_target.name if join_target else generate_node_name(cluster.name, Role.SERVER, 0)
            connection_url = f'https://{join_name}:{DEFAULT_API_PORT}'
            labels[k3d_labels.LABEL_CLUSTER_URL] = connection_url

            # IPs are handed out here, before any concurrent phase
            for node in cluster.nodes:
                if node.role != Role.LOADBALANCER:
                    self._setup_node(cluster, node, labels, env, connection_url)

            servers = [node for node in cluster.server_nodes if node is not cluster.init_node]
            others = [node for node in cluster.nodes if node.role not in (Role.SERVER, Role.LOADBALANCER)]

            server_count = 0
            if cluster.init_node is not None:
                init_node = cluster.init_node
                if '--cluster-init' not in init_node.args:
                    init_node.args.append('--cluster-init')
                init_node.runtime_labels[k3d_labels.LABEL_SERVER_IS_INIT] = 'true'

                if opts.disable_loadbalancer:
                    init_node.ports[API_PORT_KEY] = [cluster.kube_api.binding]

                self._logger.info('Creating initializing server node')
                await self._create_node(init_node)
                await self._start_node(init_node, opts.node_hooks)
                await self._wait_for_node(init_node, Intent.CLUSTER_CREATE, deadline)
                server_count += 1

            for node in servers:
                if server_count == 0 and opts.disable_loadbalancer:
                    node.ports[API_PORT_KEY] = [cluster.kube_api.binding]

                await self._pause_between_servers()
                await self._create_node(node)
                server_count += 1

            self._warn_on_two_servers(cluster)

            await run_concurrently(self._create_node(node) for node in others)

            if not opts.disable_loadbalancer:
                await self._create_loadbalancer(cluster, labels)

        self._logger.info(f"Cluster '{cluster.name}' created")

    async def _create_loadbalancer(self, cluster: Cluster, labels: dict[str, str]) -> None:
        if cluster.server_loadbalancer is None:
            self._logger.info('No loadbalancer specified, creating a default one...')

        node = prepare_loadbalancer(cluster, labels, self._settings.loadbalancer_image)
        loadbalancer = cluster.server_loadbalancer

        if not loadbalancer.config.ports:
            loadbalancer.config = generate_loadbalancer_config(cluster, self._settings.loadbalancer_worker_connections)
        elif API_PORT_KEY not in loadbalancer.config.ports:
            loadbalancer.config.ports[API_PORT_KEY] = [server.name for server in cluster.server_nodes]

        attach_config_hook(node, loadbalancer.config)

        self._logger.info(f"Creating LoadBalancer '{node.name}'")
        await self._create_node(node)

    async def start(self, cluster: Cluster, opts: ClusterStartOpts | None = None) -> None:
        opts = opts or ClusterStartOpts()

        self._logger.info(f"Starting cluster '{cluster.name}'")

        init_node: Node | None = None
        servers: list[Node] = []
        agents: list[Node] = []
        helpers: list[Node] = []
        for node in cluster.nodes:
            if node.role == Role.SERVER:
                if node.server_opts.is_init:
                    init_node = node
                else:
                    servers.append(node)
            elif node.role == Role.AGENT:
                agents.append(node)
            else:
                helpers.append(node)

        servers.sort(key=lambda n: n.name)

        host_aliases = self._host_aliases(opts)
        for alias in host_aliases:
            validate_host_alias(alias)

        self._warn_on_two_servers(cluster)

        async with asyncio.timeout(opts.timeout) as deadline:
            if init_node is not None:
                self._logger.info('Starting the initializing server...')
                # always wait for the init node, other servers need it to join
                await self._start_and_wait(init_node, opts.node_hooks, True, opts.intent, deadline)

            self._logger.info('Starting servers...')
            for node in servers:
                await self._start_and_wait(node, opts.node_hooks, opts.wait_for_server, opts.intent, deadline)

            self._logger.info('Starting agents...')
            await run_concurrently(
                self._start_and_wait(node, opts.node_hooks, opts.wait_for_server, opts.intent, deadline)
                for node in agents
            )

            self._logger.info('Starting helpers...')
            await run_concurrently(
                self._start_and_wait(node, [], node.role == Role.LOADBALANCER, opts.intent, deadline)
                for node in helpers
            )

            await self._run_post_start_actions(cluster, opts, host_aliases)

        self._logger.info(f"Started cluster '{cluster.name}'")

    async def run(
        self, cluster: Cluster, create_opts: ClusterCreateOpts | None = None, start_opts: ClusterStartOpts | None = None
    ) -> None:
        """Create and start a cluster.

        Without explicit start options the create timeout is one budget shared by
        both phases: start only gets what create left over.
        """
        create_opts = create_opts or ClusterCreateOpts()
        loop = asyncio.get_running_loop()
        started = loop.time()

        await self.create(cluster, create_opts)

        if start_opts is None:
            timeout = None
            if create_opts.timeout is not None:
                timeout = max(create_opts.timeout - (loop.time() - started), 0)

            start_opts = ClusterStartOpts(
                timeout=timeout,
                wait_for_server=create_opts.wait_for_server,
                intent=Intent.CLUSTER_CREATE,
                node_hooks=create_opts.node_hooks,
            )

        await self.start(cluster, start_opts)

    async def stop(self, cluster: Cluster) -> None:
        self._logger.info(f"Stopping cluster '{cluster.name}'")

        async def _stop(node: Node) -> None:
            with self._runtime_operation('stop node', node.name):
                await self._runtime.stop_node(node)
            node.state = NodeState(status=NodeStatus.EXITED)

        failures = await self._best_effort('stop', cluster.nodes, _stop)
        if failures:
            raise failures

        self._logger.info(f"Stopped cluster '{cluster.name}'")

    async def delete(self, cluster: Cluster, opts: ClusterDeleteOpts | None = None) -> None:
        """Delete every node, the cluster network and the cluster volumes.

        Works on the given cluster value, so a partially created cluster can be
        cleaned up. A cluster without nodes is looked up by name first.
        """
        opts = opts or ClusterDeleteOpts()

        self._logger.info(f"Deleting cluster '{cluster.name}'")
        if not cluster.nodes:
            cluster = await self.get_cluster(cluster.name)

        async def _delete(node: Node) -> None:
            if node.role == Role.REGISTRY and not opts.skip_registry_check:
                other_networks = [
                    network for network in node.networks
                    if network not in (cluster.network.name, DEFAULT_RUNTIME_NETWORK, HOST_NETWORK)
                ]
                if other_networks:
                    self._logger.info(
                        f'Registry {node.name} is also connected to other (non-default) networks {other_networks}, '
                        'not deleting it...'
                    )
                    try:
                        await self._runtime.disconnect_node_from_network(node, cluster.network.name)
                    except Exception as e:
                        self._logger.warning(
                            f'Failed to disconnect registry {node.name} '
                            f'from cluster network {cluster.network.name}: {e}'
                        )
                    return

            try:
                with self._runtime_operation('delete node', node.name):
                    await self._runtime.delete_node(node)
            except NodeNotFoundError:
                self._logger.debug(f"Node '{node.name}' is already gone")

        failures = await self._best_effort('delete', cluster.nodes, _delete)

        await self._networks.delete_network(cluster.network)

        volumes = list(cluster.volumes)
        if cluster.image_volume and cluster.image_volume not in volumes:
            volumes.append(cluster.image_volume)

        for volume in volumes:
            self._logger.info(f"Deleting volume '{volume}'")
            try:
                await self._runtime.delete_volume(volume)
            except Exception as e:
                self._logger.warning(
                    f"Failed to delete volume '{volume}' of cluster '{cluster.name}': Try to delete it manually ({e})"
                )

        if failures:
            raise failures

        self._logger.info(f"Deleted cluster '{cluster.name}'")

    # read back

    async def get_cluster(self, name: str) -> Cluster:
        with self._runtime_operation('list nodes of cluster', name):
            nodes = await self._runtime.get_nodes_by_label({k3d_labels.LABEL_CLUSTER_NAME: name})

        if not nodes:
            raise ClusterNotFoundError(f"No nodes found for cluster '{name}'")

        cluster = cluster_from_nodes(name, nodes)

        with self._runtime_operation('list volumes of cluster', name):
            cluster.volumes = await self._runtime.get_volumes_by_label({k3d_labels.LABEL_CLUSTER_NAME: name})

        if cluster.server_loadbalancer is not None:
            try:
                content = await self._runtime.exec_in_node(
                    cluster.server_loadbalancer.node, ['cat', DEFAULT_LOADBALANCER_CONFIG_PATH]
                )
                cluster.server_loadbalancer.config = load_loadbalancer_config(content)
            except Exception as e:
                self._logger.warning(
                    f'Failed to read loadbalancer config from {cluster.server_loadbalancer.node.name}: {e}'
                )

        return cluster

    async def list_clusters(self) -> list[Cluster]:
        with self._runtime_operation('list', 'nodes'):
            nodes = await self._runtime.get_nodes_by_label(dict(k3d_labels.DEFAULT_RUNTIME_LABELS))

        nodes = [node for node in nodes if node.runtime_labels.get(k3d_labels.LABEL_ROLE) in _RUNTIME_ROLES]
        clusters = group_clusters(nodes)

        self._logger.debug(f'Found {len(clusters)} clusters')
        return clusters

    # changes to running clusters

    async def update_loadbalancer(self, cluster: Cluster) -> bool:
        """Regenerate the loadbalancer config and replace the loadbalancer if it changed."""
        loadbalancer = cluster.server_loadbalancer
        if loadbalancer is None:
            raise LoadbalancerConfigError(f"Cluster '{cluster.name}' has no server loadbalancer")

        config = generate_loadbalancer_config(cluster, self._settings.loadbalancer_worker_connections)
        # proxied ports keep their targets as long as those nodes still exist
        node_names = {node.name for node in cluster.nodes}
        for port, backends in loadbalancer.config.ports.items():
            remaining = [name for name in backends if name in node_names]
            if port != API_PORT_KEY and remaining:
                config.ports[port] = remaining

        if config == loadbalancer.config:
            self._logger.info('Loadbalancer configuration is up to date')
            return False

        loadbalancer.config = config
        node = loadbalancer.node
        attach_config_hook(node, config)

        self._logger.info(f"Replacing loadbalancer '{node.name}' with new configuration")
        try:
            with self._runtime_operation('delete loadbalancer', node.name):
                await self._runtime.delete_node(node)
        except NodeNotFoundError:
            self._logger.debug(f"Loadbalancer '{node.name}' did not exist")

        node.state = NodeState()
        await self._create_node(node)
        await self._start_and_wait(node, [], True, Intent.NODE_START, None)

        return True

    def _template_node(self, cluster: Cluster, role: Role) -> Node | None:
        same_role = next((node for node in cluster.nodes if node.role == role), None)
        if same_role is not None:
            return same_role

        self._logger.debug(f"Didn't find node with role '{role}' in cluster '{cluster.name}', using any other node")
        return next((node for node in cluster.nodes if node.role != Role.LOADBALANCER), None)

    async def add_node(self, cluster: Cluster, node: Node, wait: bool = True) -> None:
        """Add a server or agent to an existing cluster, copying settings from a similar node."""
        if not cluster.nodes:
            cluster = await self.get_cluster(cluster.name)

        template = self._template_node(cluster, node.role)
        if template is None:
            raise PreconditionError(f"Cluster '{cluster.name}' has no node to copy settings from")

        with self._runtime_operation('inspect node', template.name):
            template = await self._runtime.get_node(template)

        node.networks = [cluster.network.name]
        node.image = node.image or template.image
        node.restart = True
        node.env = [*template.env, *(variable for variable in node.env if variable not in template.env)]
        if template.role == node.role:
            node.cmd = node.cmd or list(template.cmd)
            node.args = [*template.args, *node.args]
            node.volumes = node.volumes or list(template.volumes)

        copied_labels = {
            key: value for key, value in template.runtime_labels.items()
            if key not in (k3d_labels.LABEL_ROLE, k3d_labels.LABEL_NODE_STATIC_IP, k3d_labels.LABEL_SERVER_IS_INIT)
            and not key.startswith('k3d.server.api')
        }
        node.runtime_labels = {**copied_labels, **node.runtime_labels}

        if node.role in (Role.SERVER, Role.AGENT):
            if not any(variable.startswith(f'{K3S_ENV_CLUSTER_CONNECT_URL}=') for variable in node.env):
                url = node.runtime_labels.get(k3d_labels.LABEL_CLUSTER_URL)
                if url:
                    node.env.append(f'{K3S_ENV_CLUSTER_CONNECT_URL}={url}')
                else:
                    self._logger.warning(f"Failed to find {K3S_ENV_CLUSTER_CONNECT_URL} value for node '{node.name}'")

        if node.role == Role.SERVER:
            # only the initializing server may bootstrap the datastore
            node.cmd = [arg for arg in node.cmd if arg not in DO_NOT_COPY_SERVER_FLAGS]
            node.args = [arg for arg in node.args if arg not in DO_NOT_COPY_SERVER_FLAGS]
            node.server_opts.is_init = False
            node.server_opts.kube_api = cluster.kube_api
            node.runtime_labels[k3d_labels.LABEL_SERVER_IS_INIT] = 'false'

            if cluster.network.ipam.managed and cluster.network.ipam.ip_prefix is not None:
                ip = self._networks.allocate_ip(cluster.network)
                node.ip.ip = ip
                node.ip.static = True
                node.runtime_labels[k3d_labels.LABEL_NODE_STATIC_IP] = str(ip)

        await self._create_node(node)
        cluster.nodes.append(node)

        await self._start_and_wait(node, [], wait, Intent.NODE_CREATE, None)

        if node.role == Role.SERVER and cluster.server_loadbalancer is not None:
            await self.update_loadbalancer(cluster)

    async def delete_node(self, cluster: Cluster, node: Node) -> None:
        with self._runtime_operation('delete node', node.name):
            await self._runtime.delete_node(node)

        if node in cluster.nodes:
            cluster.nodes.remove(node)
        if cluster.init_node is node:
            cluster.init_node = None

        if node.role == Role.SERVER and cluster.server_loadbalancer is not None:
            await self.update_loadbalancer(cluster)

    # post-start

    @staticmethod
    def _host_aliases(opts: ClusterStartOpts) -> list[HostAlias]:
        host_aliases = list(opts.host_aliases)
        if opts.host_gateway_ip:
            host_aliases.insert(0, HostAlias(ip=opts.host_gateway_ip, hostnames=[DEFAULT_K3D_INTERNAL_HOST_RECORD]))
        return host_aliases

    async def _run_post_start_actions(
        self, cluster: Cluster, opts: ClusterStartOpts, host_aliases: list[HostAlias]
    ) -> None:
        if cluster.network.name == HOST_NETWORK:
            self._logger.debug('Not injecting host records as the cluster network is host')
            return

        actions = [self._inject_host_aliases(node, host_aliases) for node in cluster.nodes if host_aliases]
        if not opts.disable_coredns_patch:
            actions.append(self._patch_coredns(cluster, host_aliases))

        await run_concurrently(actions)

    async def _inject_host_aliases(self, node: Node, host_aliases: list[HostAlias]) -> None:
        action = RewriteFileAction(
            name='inject host aliases',
            path=DEFAULT_ETC_HOSTS_PATH,
            rewrite=lambda content: add_host_aliases(content, host_aliases),
        )
        with self._runtime_operation(f'{action.name} into {action.path} in node', node.name):
            await action.run(self._runtime, node)

        self._logger.debug(f"Added {len(host_aliases)} host aliases to {action.path} in node '{node.name}'")

    async def _patch_coredns(self, cluster: Cluster, host_aliases: list[HostAlias]) -> None:
        entries = [{'ip': alias.ip, 'hostname': hostname} for alias in host_aliases for hostname in alias.hostnames]

        with self._runtime_operation('get cluster network', cluster.network.name):
            network = await self._runtime.get_network(cluster.network)
        entries.extend({'ip': str(member.ip), 'hostname': member.name} for member in network.members)

        if not entries:
            return

        self._logger.debug(f'Adding {len(entries)} host records to CoreDNS')
        script = template_loader.render_template('coredns-add-host.sh', 'node', {'entries': entries})

        await self._exec_coredns_patch(cluster, script)

    @retry(
        retry=retry_if_exception_type(RuntimeOperationError),
        wait=wait_fixed(COREDNS_PATCH_RETRY_WAIT_SECONDS),
        stop=stop_after_attempt(COREDNS_PATCH_RETRIES),
        reraise=True,
    )
    async def _exec_coredns_patch(self, cluster: Cluster, script: str) -> Node:
        # CoreDNS may not be deployed yet right after start
        for node in cluster.nodes:
            if node.role not in (Role.SERVER, Role.AGENT):
                continue
            try:
                await self._runtime.exec_in_node(node, ['sh', '-c', script])
                return node
            except Exception as e:
                self._logger.debug(f"Error patching the CoreDNS ConfigMap from node '{node.name}': {e}")

        raise RuntimeOperationError(
            'patch the CoreDNS ConfigMap of cluster', cluster.name, 'no server or agent node succeeded (see debug logs)'
        )
