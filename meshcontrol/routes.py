"""Subnet routes advertised and enabled per node."""

from __future__ import annotations

from typing import Protocol

from .addresses import IPInterface, string_to_ip_prefix
from .keys import HeadscaleError
from .models import Machine


class RouteIsNotAvailable(HeadscaleError):
    """The node does not advertise the requested route."""

    def __init__(self, message: str = "route is not available") -> None:
        super().__init__(message)


class _MachineStore(Protocol):
    def get_machine(self, namespace: str, name: str) -> Machine: ...

    def save(self, machine: Machine) -> None: ...


def _parse_route(route_str: str) -> IPInterface:
    return string_to_ip_prefix([route_str])[0]


class RouteManager:
    """Reads and enables node routes through a machine store."""

    def __init__(self, store: _MachineStore) -> None:
        self.store = store

    def get_advertised_node_routes(self, namespace: str, node_name: str) -> list[IPInterface]:
        """Routes the node advertises."""
        machine = self.store.get_machine(namespace, node_name)
        return machine.host_info.routable_ips

    def get_enabled_node_routes(self, namespace: str, node_name: str) -> list[IPInterface]:
        """Routes enabled for the node."""
        machine = self.store.get_machine(namespace, node_name)
        return machine.enabled_routes

    def is_node_route_enabled(self, namespace: str, node_name: str, route_str: str) -> bool:
        """True if the route parses and is enabled for the node."""
        try:
            route = _parse_route(route_str)
            enabled = self.get_enabled_node_routes(namespace, node_name)
        except (ValueError, HeadscaleError):
            return False
        return route in enabled

    def enable_node_route(self, namespace: str, node_name: str, route_str: str) -> None:
        """Enable an advertised route; raise RouteIsNotAvailable otherwise."""
        machine = self.store.get_machine(namespace, node_name)
        route = _parse_route(route_str)
        available_routes = list(self.get_advertised_node_routes(namespace, node_name))
        enabled_routes = list(self.get_enabled_node_routes(namespace, node_name))

        available = False
        for available_route in available_routes:
            if route == available_route:
                available = True
                if not self.is_node_route_enabled(namespace, node_name, route_str):
                    enabled_routes.append(route)

        if not available:
            raise RouteIsNotAvailable()

        machine.enabled_routes = enabled_routes
        try:
            self.store.save(machine)
        except Exception as err:
            raise HeadscaleError(
                f"failed to update node routes in the database: {err}"
            ) from err