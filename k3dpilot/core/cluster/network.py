from ipaddress import IPv4Address

from k3dpilot.core.cluster.nodefilter import filter_nodes_by_role
from k3dpilot.core.cluster.types import ClusterNetwork, Role
from k3dpilot.core.exceptions import IPAMExhaustedError, NetworkNotEmptyError, NetworkNotFoundError, PreconditionError
from k3dpilot.core.runtimes.base_runtime import BaseRuntime
from k3dpilot.core.utils import generate_token, setup_logger


class NetworkManager:
    def __init__(self, runtime: BaseRuntime) -> None:
        self._logger = setup_logger('NetworkManager')
        self._runtime = runtime

    async def _find_network(self, network: ClusterNetwork) -> ClusterNetwork | None:
        try:
            return await self._runtime.get_network(network)
        except NetworkNotFoundError:
            return None

    async def _find_free_subnet(self, network: ClusterNetwork) -> ClusterNetwork:
        scratch = ClusterNetwork(name=f'{network.name}-scratch-{generate_token(6).lower()}')

        self._logger.debug(f'Creating scratch network {scratch.name} to find a free subnet')
        scratch, _ = await self._runtime.create_network_if_not_present(scratch)

        try:
            if scratch.ipam.ip_prefix is None:
                raise IPAMExhaustedError(f'Runtime did not assign a subnet to scratch network {scratch.name}')
            self._logger.info(f'Found free subnet {scratch.ipam.ip_prefix} for network {network.name}')
        finally:
            await self._runtime.delete_network(scratch.name)

        return scratch

    async def create_network_if_not_present(self, network: ClusterNetwork) -> tuple[ClusterNetwork, bool]:
        existing = await self._find_network(network)

        if existing is not None:
            self._logger.info(f"Re-using existing network '{existing.name}' ({existing.id})")
            # not created by us, so cluster deletion must leave it alone
            existing.external = True
            existing.ipam.managed = network.ipam.managed
            for member in existing.members:
                if member.ip not in existing.ipam.ips_used:
                    existing.ipam.ips_used.append(member.ip)
            return existing, True

        if network.ipam.managed and network.ipam.ip_prefix is None:
            scratch = await self._find_free_subnet(network)
            network.ipam.ip_prefix = scratch.ipam.ip_prefix
            network.ipam.gateway = scratch.ipam.gateway

        self._logger.info(f"Creating network '{network.name}'")
        created, existed = await self._runtime.create_network_if_not_present(network)

        created.ipam.managed = network.ipam.managed
        if created.ipam.ip_prefix is None:
            created.ipam.ip_prefix = network.ipam.ip_prefix

        return created, existed

    @staticmethod
    def gateway_of(network: ClusterNetwork) -> IPv4Address:
        prefix = network.ipam.ip_prefix
        return network.ipam.gateway or prefix.network_address + 1

    def get_ip(self, network: ClusterNetwork) -> IPv4Address:
        """Return the lowest address of the prefix that is not reserved or in use."""
        prefix = network.ipam.ip_prefix
        if prefix is None:
            raise PreconditionError(f"Network '{network.name}' has no subnet to allocate IPs from")

        excluded = {prefix.network_address, prefix.broadcast_address, self.gateway_of(network)}
        excluded.update(network.ipam.ips_used)

        for ip in prefix:
            if ip not in excluded:
                self._logger.debug(f'Found free IP {ip} in network {network.name}')
                return ip

        raise IPAMExhaustedError(f"No free IP left in network '{network.name}' ({prefix})")

    # not locked, allocate before fanning out node creation
    def allocate_ip(self, network: ClusterNetwork) -> IPv4Address:
        ip = self.get_ip(network)
        network.ipam.ips_used.append(ip)

        return ip

    async def delete_network(self, network: ClusterNetwork) -> bool:
        """Delete a network created for a cluster.

        Externally managed networks are skipped. If containers are still attached
        and all of them are registries, they get disconnected and deletion is tried
        once more. Failures are logged, never raised. Returns whether the network
        was deleted.
        """
        if not network.name:
            return False

        if network.external:
            self._logger.debug(f"Skip deletion of cluster network '{network.name}' because it's managed externally")
            return False

        self._logger.info(f"Deleting cluster network '{network.name}'")
        try:
            await self._runtime.delete_network(network.name)
            return True
        except NetworkNotEmptyError:
            pass
        except Exception as e:
            self._logger.warning(f"Failed to delete cluster network '{network.name}': {e}")
            return False

        try:
            connected = await self._runtime.get_nodes_in_network(network.name)
        except Exception as e:
            self._logger.warning(f'Failed to check cluster network for connected nodes: {e}')
            return False

        if not connected:
            self._logger.warning(
                f"Failed to delete cluster network '{network.name}' because it's still in use: "
                'is there another cluster using it?'
            )
            return False

        registries = filter_nodes_by_role(connected, Role.REGISTRY)
        if len(registries) != len(connected):
            self._logger.warning(
                f"Not deleting cluster network '{network.name}': non-registry nodes are still connected"
            )
            return False

        for registry in registries:
            self._logger.debug(f'Disconnecting registry node {registry.name} from the network...')
            try:
                await self._runtime.disconnect_node_from_network(registry, network.name)
            except Exception as e:
                self._logger.warning(f'Failed to disconnect registry {registry.name} from network {network.name}: {e}')
                return False

        try:
            await self._runtime.delete_network(network.name)
        except Exception as e:
            self._logger.warning(f'Failed to delete cluster network, even after disconnecting registry node(s): {e}')
            return False

        return True
