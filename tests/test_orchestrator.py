import asyncio
from ipaddress import IPv4Address

import pytest
from tenacity import stop_after_attempt, wait_none

from k3dpilot.api.schemas.cluster import ClusterCreateSchema
from k3dpilot.core.cluster import labels as k3d_labels
from k3dpilot.core.cluster.loadbalancer import API_PORT_KEY, load_loadbalancer_config
from k3dpilot.core.cluster.orchestrator import ClusterOrchestrator
from k3dpilot.core.cluster.transform import transform_request
from k3dpilot.core.cluster.types import (
    Cluster,
    ClusterCreateOpts,
    ClusterNetwork,
    ClusterStartOpts,
    HostAlias,
    Node,
    NodeStatus,
    PortBinding,
    Role,
)
from k3dpilot.core.config import DEFAULT_ETC_HOSTS_PATH, DEFAULT_LOADBALANCER_CONFIG_PATH
from k3dpilot.core.exceptions import (
    ClusterNotFoundError,
    MultiNodeError,
    NodeCrashLoopError,
    NodeReadinessTimeoutError,
    PreconditionError,
    RuntimeOperationError,
)

SERVER_0 = 'k3d-demo-server-0'
LOADBALANCER = 'k3d-demo-serverlb'


@pytest.fixture
def build(settings):
    def _build(name='demo', **kwargs) -> tuple[Cluster, ClusterCreateOpts]:
        return transform_request(ClusterCreateSchema(name=name, **kwargs), settings)

    return _build


@pytest.fixture
def record_pauses(monkeypatch, orchestrator, runtime):
    async def pause():
        runtime.calls.append(('pause', ''))

    monkeypatch.setattr(orchestrator, '_pause_between_servers', pause)


@pytest.fixture
def fast_coredns_retries(monkeypatch):
    monkeypatch.setattr(ClusterOrchestrator._exec_coredns_patch.retry, 'wait', wait_none())


def by_name(cluster, name):
    return next(node for node in cluster.nodes if node.name == name)


def register(runtime, cluster, *nodes):
    runtime.networks[cluster.network.name] = cluster.network
    for node in nodes:
        node.networks = [cluster.network.name]
        runtime.nodes[node.name] = node
        cluster.nodes.append(node)


@pytest.mark.asyncio
class TestCreate:
    async def test_servers_are_created_in_sequence_after_the_init_node(self, orchestrator, runtime, build,
                                                                       record_pauses):
        cluster, opts = build(servers=3, agents=2)

        await orchestrator.create(cluster, opts)

        events = [(op, target) for op, target in runtime.calls if op in ('create_node', 'start_node', 'pause')]
        assert events[:6] == [
            ('create_node', SERVER_0),
            ('start_node', SERVER_0),
            ('pause', ''),
            ('create_node', 'k3d-demo-server-1'),
            ('pause', ''),
            ('create_node', 'k3d-demo-server-2'),
        ]
        assert set(events[6:8]) == {('create_node', 'k3d-demo-agent-0'), ('create_node', 'k3d-demo-agent-1')}
        assert events[8:] == [('create_node', LOADBALANCER)]

    async def test_init_node_setup(self, orchestrator, build):
        cluster, opts = build(servers=3, agents=1)

        await orchestrator.create(cluster, opts)

        init_node = by_name(cluster, SERVER_0)
        assert [n for n in cluster.nodes if '--cluster-init' in n.args] == [init_node]
        assert init_node.runtime_labels[k3d_labels.LABEL_SERVER_IS_INIT] == 'true'
        assert init_node.state.running is True

        joining = [by_name(cluster, 'k3d-demo-server-1'), by_name(cluster, 'k3d-demo-agent-0')]
        for node in joining:
            assert f'K3S_URL=https://{SERVER_0}:6443' in node.env
            assert node.state.status == NodeStatus.CREATED
        assert by_name(cluster, 'k3d-demo-server-1').runtime_labels[k3d_labels.LABEL_SERVER_IS_INIT] == 'false'
        assert by_name(cluster, 'k3d-demo-agent-0').cmd[0] == 'agent'

    async def test_nodes_carry_cluster_labels(self, orchestrator, build):
        cluster, opts = build(servers=1, agents=1)

        await orchestrator.create(cluster, opts)

        assert cluster.token
        for node in cluster.nodes:
            assert node.runtime_labels[k3d_labels.LABEL_APP] == 'k3d'
            assert node.runtime_labels[k3d_labels.LABEL_CLUSTER_NAME] == 'demo'
            assert node.runtime_labels[k3d_labels.LABEL_CLUSTER_TOKEN] == cluster.token
            assert node.runtime_labels[k3d_labels.LABEL_NETWORK] == 'k3d-demo'
            assert node.runtime_labels[k3d_labels.LABEL_NETWORK_EXTERNAL] == 'false'
            assert node.runtime_labels[k3d_labels.LABEL_ROLE] == node.role
            assert node.networks == ['k3d-demo']

        for node in (by_name(cluster, SERVER_0), by_name(cluster, 'k3d-demo-agent-0')):
            assert f'K3S_TOKEN={cluster.token}' in node.env
            assert 'k3d-demo-images:/k3d/images' in node.volumes

    async def test_image_volume(self, orchestrator, runtime, build):
        cluster, opts = build()

        await orchestrator.create(cluster, opts)

        assert cluster.image_volume == 'k3d-demo-images'
        assert runtime.volumes['k3d-demo-images'][k3d_labels.LABEL_CLUSTER_NAME] == 'demo'

    async def test_image_volume_disabled(self, orchestrator, runtime, build):
        cluster, opts = build(disable_image_volume=True)

        await orchestrator.create(cluster, opts)

        assert runtime.calls_of('create_volume') == []
        assert cluster.image_volume == ''

    async def test_loadbalancer_gets_config_hook(self, orchestrator, build):
        cluster, opts = build(servers=3)

        await orchestrator.create(cluster, opts)

        loadbalancer = cluster.server_loadbalancer
        assert loadbalancer.node.ports[API_PORT_KEY] == [PortBinding(host_ip='0.0.0.0', host_port='6443')]
        assert loadbalancer.config.ports[API_PORT_KEY] == [SERVER_0, 'k3d-demo-server-1', 'k3d-demo-server-2']
        assert [hook.action.dest for hook in loadbalancer.node.hook_actions] == [DEFAULT_LOADBALANCER_CONFIG_PATH]

    async def test_api_port_on_server_without_loadbalancer(self, orchestrator, runtime, build):
        cluster, opts = build(disable_loadbalancer=True)

        await orchestrator.create(cluster, opts)

        assert by_name(cluster, SERVER_0).ports[API_PORT_KEY] == [PortBinding(host_ip='0.0.0.0', host_port='6443')]
        assert runtime.calls_of('create_node') == [SERVER_0]

    async def test_managed_network_assigns_distinct_static_ips(self, orchestrator, build):
        cluster, opts = build(servers=3, subnet='10.10.0.0/24')

        await orchestrator.create(cluster, opts)

        ips = [node.runtime_labels[k3d_labels.LABEL_NODE_STATIC_IP] for node in cluster.server_nodes]
        assert ips == ['10.10.0.2', '10.10.0.3', '10.10.0.4']
        assert [node.ip.ip for node in cluster.server_nodes] == [IPv4Address(ip) for ip in ips]
        assert all(node.ip.static for node in cluster.server_nodes)

    async def test_init_node_crash_loop_stops_creation(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3, agents=2)
        runtime.logs[SERVER_0] = ['']
        runtime.statuses[SERVER_0] = [(True, NodeStatus.RESTARTING)]

        with pytest.raises(NodeCrashLoopError):
            await orchestrator.create(cluster, opts)

        assert runtime.calls_of('create_node') == [SERVER_0]

    async def test_init_node_timeout_stops_creation(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3, timeout=0.05)
        runtime.logs[SERVER_0] = ['still booting']

        with pytest.raises(NodeReadinessTimeoutError) as exc_info:
            await orchestrator.create(cluster, opts)

        assert exc_info.value.node_name == SERVER_0
        assert runtime.calls_of('create_node') == [SERVER_0]

    async def test_runtime_errors_are_wrapped(self, orchestrator, runtime, build):
        cluster, opts = build()
        runtime.fail('create_node', SERVER_0, OSError('no space left on device'))

        with pytest.raises(RuntimeOperationError, match=f'Failed to create node {SERVER_0}: no space left'):
            await orchestrator.create(cluster, opts)


@pytest.mark.asyncio
class TestValidation:
    async def test_two_init_nodes(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3)
        cluster.nodes[1].server_opts.is_init = True

        with pytest.raises(PreconditionError, match='Only one init node is allowed'):
            await orchestrator.create(cluster, opts)

        assert runtime.calls == []

    async def test_multiple_servers_need_init_node(self, orchestrator, runtime, build):
        cluster, opts = build(servers=2)
        cluster.init_node = None
        cluster.nodes[0].server_opts.is_init = False

        with pytest.raises(PreconditionError, match='need an init node'):
            await orchestrator.create(cluster, opts)

        assert runtime.calls == []

    async def test_external_datastore_replaces_init_node(self, orchestrator, build):
        cluster, opts = build(servers=2)
        cluster.init_node = None
        for node in cluster.server_nodes:
            node.server_opts.is_init = False
            node.args.append('--datastore-endpoint=postgres://db:5432')

        await orchestrator.create(cluster, opts)

        assert all('--cluster-init' not in node.args for node in cluster.nodes)

    async def test_host_network_allows_one_node(self, orchestrator, runtime, build):
        cluster, opts = build(network='host')

        with pytest.raises(PreconditionError, match='host network'):
            await orchestrator.create(cluster, opts)

        assert runtime.calls == []

    async def test_subnet_on_external_network(self, orchestrator, build):
        cluster, opts = build(network='shared', subnet='10.10.0.0/24')

        with pytest.raises(PreconditionError, match='Cannot specify a subnet'):
            await orchestrator.create(cluster, opts)

    async def test_invalid_name(self, orchestrator, runtime):
        with pytest.raises(PreconditionError):
            await orchestrator.create(Cluster(name='not_valid'))

        assert runtime.calls == []


@pytest.mark.asyncio
class TestStart:
    async def test_start_order_and_post_start_actions(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3, agents=2)
        await orchestrator.create(cluster, opts)
        runtime.calls.clear()

        await orchestrator.start(cluster, ClusterStartOpts(host_gateway_ip='172.18.0.1'))

        started = runtime.calls_of('start_node')
        assert started[:2] == ['k3d-demo-server-1', 'k3d-demo-server-2']
        assert set(started[2:4]) == {'k3d-demo-agent-0', 'k3d-demo-agent-1'}
        assert started[4:] == [LOADBALANCER]
        assert runtime.calls.index(('write_to_node', LOADBALANCER)) < runtime.calls.index(('start_node', LOADBALANCER))

        for node in cluster.nodes:
            assert runtime.written[(node.name, DEFAULT_ETC_HOSTS_PATH)] == b'172.18.0.1 host.k3d.internal\n'

        coredns = [name for name, cmd in runtime.exec_commands if 'kubectl patch configmap coredns' in cmd[-1]]
        assert coredns == [SERVER_0]

    async def test_start_waits_for_every_node(self, orchestrator, runtime, build):
        cluster, opts = build(servers=1, agents=1)
        await orchestrator.create(cluster, opts)
        runtime.log_reads.clear()

        await orchestrator.start(cluster)

        assert set(runtime.log_reads) == {SERVER_0, 'k3d-demo-agent-0', LOADBALANCER}
        assert all(node.state.running for node in cluster.nodes)

    async def test_no_post_start_actions_on_host_network(self, orchestrator, runtime, build):
        cluster, opts = build(network='host', disable_loadbalancer=True)
        await orchestrator.create(cluster, opts)

        await orchestrator.start(cluster, ClusterStartOpts(host_gateway_ip='172.18.0.1'))

        assert runtime.calls_of('exec_in_node') == []

    async def test_coredns_patch_is_retried(self, orchestrator, runtime, build, fast_coredns_retries):
        cluster, opts = build(disable_loadbalancer=True)
        runtime.fail('exec_in_node', SERVER_0, RuntimeError('coredns not deployed yet'), times=2)

        await orchestrator.run(cluster, opts)

        assert runtime.calls_of('exec_in_node') == [SERVER_0] * 3

    async def test_coredns_patch_gives_up(self, monkeypatch, orchestrator, runtime, build, fast_coredns_retries):
        monkeypatch.setattr(ClusterOrchestrator._exec_coredns_patch.retry, 'stop', stop_after_attempt(2))
        cluster, opts = build(disable_loadbalancer=True)
        runtime.fail('exec_in_node', SERVER_0, RuntimeError('coredns not deployed yet'))

        with pytest.raises(RuntimeOperationError, match='patch the CoreDNS ConfigMap of cluster demo'):
            await orchestrator.run(cluster, opts)

        assert runtime.calls_of('exec_in_node') == [SERVER_0] * 2

    async def test_coredns_patch_disabled(self, orchestrator, runtime, build):
        cluster, opts = build(disable_loadbalancer=True)
        await orchestrator.create(cluster, opts)

        await orchestrator.start(cluster, ClusterStartOpts(disable_coredns_patch=True))

        assert runtime.calls_of('exec_in_node') == []

    async def test_host_aliases_are_not_duplicated_on_restart(self, orchestrator, runtime, build):
        cluster, opts = build(disable_loadbalancer=True)
        await orchestrator.create(cluster, opts)
        runtime.written[(SERVER_0, DEFAULT_ETC_HOSTS_PATH)] = b'127.0.0.1 localhost\n172.18.0.9 registry.local\n'
        start_opts = ClusterStartOpts(
            host_gateway_ip='172.18.0.1',
            host_aliases=[HostAlias(ip='172.18.0.9', hostnames=['registry.local', 'cache.local'])],
            disable_coredns_patch=True,
        )

        await orchestrator.start(cluster, start_opts)
        await orchestrator.stop(cluster)
        await orchestrator.start(cluster, start_opts)

        assert runtime.written[(SERVER_0, DEFAULT_ETC_HOSTS_PATH)].decode('utf-8').splitlines() == [
            '127.0.0.1 localhost',
            '172.18.0.9 registry.local cache.local',
            '172.18.0.1 host.k3d.internal',
        ]

    @pytest.mark.parametrize(
        "alias",
        [
            HostAlias(ip='10.0.0.1', hostnames=["x'; touch /tmp/x; echo '"]),
            HostAlias(ip='10.0.0.1; reboot', hostnames=['registry.local']),
            HostAlias(ip='10.0.0.1', hostnames=[]),
        ],
    )
    async def test_invalid_host_alias_is_rejected_before_starting(self, orchestrator, runtime, build, alias):
        cluster, opts = build(disable_loadbalancer=True)
        await orchestrator.create(cluster, opts)
        runtime.calls.clear()

        with pytest.raises(PreconditionError):
            await orchestrator.start(cluster, ClusterStartOpts(host_aliases=[alias]))

        assert runtime.calls == []

    async def test_agent_timeout_during_start(self, orchestrator, runtime, build):
        cluster, opts = build(agents=2, disable_loadbalancer=True)
        await orchestrator.create(cluster, opts)
        runtime.logs['k3d-demo-agent-1'] = ['still booting']

        with pytest.raises(NodeReadinessTimeoutError) as exc_info:
            await orchestrator.start(cluster, ClusterStartOpts(timeout=0.2, disable_coredns_patch=True))

        assert exc_info.value.node_name == 'k3d-demo-agent-1'

    async def test_run_shares_the_timeout_between_create_and_start(self, monkeypatch, orchestrator, build):
        cluster, opts = build(timeout=10)
        start_opts = []

        async def slow_create(cluster, opts):
            await asyncio.sleep(0.05)

        async def record_start(cluster, opts):
            start_opts.append(opts)

        monkeypatch.setattr(orchestrator, 'create', slow_create)
        monkeypatch.setattr(orchestrator, 'start', record_start)

        await orchestrator.run(cluster, opts)

        assert 0 < start_opts[0].timeout <= 9.95

    async def test_run_creates_and_starts(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3, agents=1)

        await orchestrator.run(cluster, opts)

        assert all(node.state.running for node in cluster.nodes)
        written = runtime.written[(LOADBALANCER, DEFAULT_LOADBALANCER_CONFIG_PATH)]
        assert load_loadbalancer_config(written).ports[API_PORT_KEY] == [
            SERVER_0, 'k3d-demo-server-1', 'k3d-demo-server-2',
        ]


@pytest.mark.asyncio
class TestStop:
    async def test_stop_all_nodes(self, orchestrator, runtime, build):
        cluster, opts = build(agents=1)
        await orchestrator.run(cluster, opts)

        await orchestrator.stop(cluster)

        assert runtime.calls_of('stop_node') == [node.name for node in cluster.nodes]
        assert all(node.state.status == NodeStatus.EXITED for node in cluster.nodes)

    async def test_stop_is_best_effort(self, orchestrator, runtime, build):
        cluster, opts = build(agents=2)
        await orchestrator.create(cluster, opts)
        runtime.fail('stop_node', 'k3d-demo-agent-0', RuntimeError('container is paused'))

        with pytest.raises(MultiNodeError) as exc_info:
            await orchestrator.stop(cluster)

        assert len(exc_info.value) == 1
        assert runtime.calls_of('stop_node') == [node.name for node in cluster.nodes]


@pytest.mark.asyncio
class TestDelete:
    async def test_delete_is_best_effort(self, orchestrator, runtime, make_node):
        cluster = Cluster(name='demo', network=ClusterNetwork(name='k3d-demo'), volumes=['k3d-demo-images'])
        nodes = [
            make_node(SERVER_0),
            make_node('k3d-demo-agent-0', Role.AGENT),
            make_node('k3d-demo-agent-1', Role.AGENT),
        ]
        register(runtime, cluster, *nodes)
        runtime.volumes['k3d-demo-images'] = {}
        runtime.fail('delete_node', 'k3d-demo-agent-0', RuntimeError('device or resource busy'))

        with pytest.raises(MultiNodeError) as exc_info:
            await orchestrator.delete(cluster)

        assert len(exc_info.value) == 1
        failed_node, error = exc_info.value.failures[0]
        assert failed_node is nodes[1]
        assert isinstance(error, RuntimeOperationError)
        assert runtime.calls_of('delete_node') == [node.name for node in nodes]
        assert runtime.calls_of('delete_network') == ['k3d-demo']
        assert runtime.calls_of('delete_volume') == ['k3d-demo-images']

    async def test_delete_cleans_up_after_failed_create(self, orchestrator, runtime, build):
        cluster, opts = build(agents=2)
        runtime.fail('create_node', 'k3d-demo-agent-1', OSError('image pull failed'))

        with pytest.raises(RuntimeOperationError):
            await orchestrator.create(cluster, opts)
        assert SERVER_0 in runtime.nodes

        await orchestrator.delete(cluster)

        assert runtime.nodes == {}
        assert LOADBALANCER in runtime.calls_of('delete_node')
        assert runtime.calls_of('delete_network') == ['k3d-demo']
        assert runtime.networks == {}
        assert runtime.calls_of('delete_volume') == ['k3d-demo-images']
        assert runtime.volumes == {}

    async def test_missing_nodes_are_not_failures(self, orchestrator, runtime, make_node):
        cluster = Cluster(name='demo', network=ClusterNetwork(name='k3d-demo'))
        cluster.nodes = [make_node(SERVER_0)]

        await orchestrator.delete(cluster)

        assert runtime.calls_of('delete_node') == [SERVER_0]

    async def test_shared_registry_is_disconnected(self, orchestrator, runtime, make_node):
        cluster = Cluster(name='demo', network=ClusterNetwork(name='k3d-demo'))
        registry = make_node('k3d-registry', Role.REGISTRY)
        register(runtime, cluster, make_node(SERVER_0), registry)
        registry.networks.append('other-net')

        await orchestrator.delete(cluster)

        assert runtime.calls_of('delete_node') == [SERVER_0]
        assert runtime.calls_of('disconnect_node_from_network') == ['k3d-registry']
        assert registry.networks == ['other-net']
        assert 'k3d-demo' not in runtime.networks

    async def test_delete_by_name(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3, agents=1)
        await orchestrator.run(cluster, opts)

        await orchestrator.delete(Cluster(name='demo'))

        assert runtime.nodes == {}
        assert runtime.networks == {}
        assert runtime.volumes == {}

    async def test_external_network_survives(self, orchestrator, runtime, build):
        await runtime.create_network_if_not_present(ClusterNetwork(name='shared'))
        cluster, opts = build(network='shared')
        await orchestrator.run(cluster, opts)

        await orchestrator.delete(cluster)

        assert runtime.nodes == {}
        assert 'shared' in runtime.networks


@pytest.mark.asyncio
class TestReadBack:
    async def test_get_cluster(self, orchestrator, build):
        cluster, opts = build(servers=3, agents=1)
        await orchestrator.run(cluster, opts)

        found = await orchestrator.get_cluster('demo')

        assert [node.name for node in found.nodes] == sorted(node.name for node in cluster.nodes)
        assert found.init_node.name == SERVER_0
        assert found.token == cluster.token
        assert found.network.name == 'k3d-demo'
        assert found.image_volume == 'k3d-demo-images'
        assert found.volumes == ['k3d-demo-images']
        assert found.server_loadbalancer.config.ports[API_PORT_KEY] == [
            SERVER_0, 'k3d-demo-server-1', 'k3d-demo-server-2',
        ]

    async def test_get_missing_cluster(self, orchestrator):
        with pytest.raises(ClusterNotFoundError, match="No nodes found for cluster 'nope'"):
            await orchestrator.get_cluster('nope')

    async def test_list_clusters(self, orchestrator, runtime, build):
        for name in ('beta', 'alpha'):
            cluster, opts = build(name=name)
            await orchestrator.run(cluster, opts)
        runtime.nodes['unrelated'] = Node(name='unrelated', runtime_labels={'app': 'k3d', 'k3d.role': 'noRole'})

        clusters = await orchestrator.list_clusters()

        assert [cluster.name for cluster in clusters] == ['alpha', 'beta']
        assert [node.name for node in clusters[0].nodes] == ['k3d-alpha-server-0', 'k3d-alpha-serverlb']


@pytest.mark.asyncio
class TestNodeChanges:
    async def test_add_server_copies_settings_and_updates_loadbalancer(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3)
        await orchestrator.run(cluster, opts)
        runtime.calls.clear()

        new_server = Node(name='k3d-demo-server-3', role=Role.SERVER)
        await orchestrator.add_node(cluster, new_server)

        assert '--cluster-init' not in new_server.args
        assert new_server.runtime_labels[k3d_labels.LABEL_SERVER_IS_INIT] == 'false'
        assert new_server.runtime_labels[k3d_labels.LABEL_ROLE] == 'server'
        assert new_server.runtime_labels[k3d_labels.LABEL_CLUSTER_TOKEN] == cluster.token
        assert f'K3S_URL=https://{SERVER_0}:6443' in new_server.env
        assert new_server.state.running is True

        assert runtime.calls_of('delete_node') == [LOADBALANCER]
        assert runtime.calls_of('create_node') == ['k3d-demo-server-3', LOADBALANCER]
        written = runtime.written[(LOADBALANCER, DEFAULT_LOADBALANCER_CONFIG_PATH)]
        assert load_loadbalancer_config(written).ports[API_PORT_KEY][-1] == 'k3d-demo-server-3'

    async def test_add_agent_keeps_loadbalancer(self, orchestrator, runtime, build):
        cluster, opts = build(agents=1)
        await orchestrator.run(cluster, opts)
        runtime.calls.clear()

        new_agent = Node(name='k3d-demo-agent-1', role=Role.AGENT)
        await orchestrator.add_node(cluster, new_agent)

        assert new_agent.cmd[0] == 'agent'
        assert runtime.calls_of('create_node') == ['k3d-demo-agent-1']
        assert runtime.calls_of('delete_node') == []

    async def test_delete_server_updates_loadbalancer(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3)
        await orchestrator.run(cluster, opts)
        runtime.calls.clear()

        await orchestrator.delete_node(cluster, by_name(cluster, 'k3d-demo-server-2'))

        assert runtime.calls_of('delete_node') == ['k3d-demo-server-2', LOADBALANCER]
        assert cluster.server_loadbalancer.config.ports[API_PORT_KEY] == [SERVER_0, 'k3d-demo-server-1']

    async def test_update_loadbalancer_without_changes(self, orchestrator, runtime, build):
        cluster, opts = build(servers=3)
        await orchestrator.run(cluster, opts)
        runtime.calls.clear()

        assert await orchestrator.update_loadbalancer(cluster) is False
        assert runtime.calls == []

    async def test_update_loadbalancer_keeps_proxied_ports(self, orchestrator, build):
        cluster, opts = build(
            servers=1, agents=2, ports=[{'port': '8080:80', 'node_filters': ['agent:0-1:proxy']}]
        )
        await orchestrator.run(cluster, opts)

        await orchestrator.delete_node(cluster, by_name(cluster, 'k3d-demo-agent-1'))
        await orchestrator.add_node(cluster, Node(name='k3d-demo-server-1', role=Role.SERVER))

        ports = cluster.server_loadbalancer.config.ports
        assert ports['80/tcp'] == ['k3d-demo-agent-0']
        assert ports[API_PORT_KEY] == [SERVER_0, 'k3d-demo-server-1']
