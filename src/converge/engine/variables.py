"""
Converge Variable Resolver

Builds the effective variable set for a host as a stack of tiered layers.

Tiers, lowest to highest precedence:

    ROLE_DEFAULTS < GROUP < HOST < ROLE_VARS < PLAY < MAGIC
        < REGISTERED < LOOP < EXTRA

Within the GROUP tier, layers are stacked 'all' first and nearest group
last, so a nearer group overrides its ancestors. A bag is immutable once
built; adding facts or loop variables produces a new bag.
"""

import enum
import logging
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Tuple

from converge.engine.errors import UndefinedVariableError
from converge.engine.inventory import Host, InventoryManager

logger = logging.getLogger(__name__)


class Tier(enum.IntEnum):
    """Precedence tier of a variable layer (higher wins)."""

    ROLE_DEFAULTS = 10
    GROUP = 20
    HOST = 30
    ROLE_VARS = 40
    PLAY = 50
    MAGIC = 60
    REGISTERED = 70
    LOOP = 80
    EXTRA = 90


class VariableLayer(NamedTuple):
    tier: Tier
    source: str
    values: Mapping[str, Any]


class VariableBag(Mapping):
    """
    Read-only, layered mapping of variables.

    Layers are kept sorted by tier; layers of the same tier keep the order
    they were added in, later ones winning.
    """

    def __init__(self, layers: Tuple[VariableLayer, ...] = ()):
        # sorted() is stable, so same-tier layers keep insertion order
        self._layers: Tuple[VariableLayer, ...] = tuple(sorted(layers, key=lambda layer: layer.tier))
        flat: Dict[str, Any] = {}
        for layer in self._layers:
            flat.update(layer.values)
        self._flat = flat

    def __getitem__(self, key: str) -> Any:
        try:
            return self._flat[key]
        except KeyError:
            raise UndefinedVariableError(f"'{key}' is undefined", variable=key) from None

    def __contains__(self, key: object) -> bool:
        return key in self._flat

    def __iter__(self) -> Iterator[str]:
        return iter(self._flat)

    def __len__(self) -> int:
        return len(self._flat)

    def __repr__(self) -> str:
        tiers = ', '.join(f"{layer.tier.name}:{layer.source}" for layer in self._layers)
        return f"VariableBag([{tiers}])"

    def get(self, key: str, default: Any = None) -> Any:
        return self._flat.get(key, default)

    @property
    def layers(self) -> Tuple[VariableLayer, ...]:
        return self._layers

    def with_layer(self, tier: Tier, values: Mapping[str, Any], source: str = '') -> 'VariableBag':
        """Return a new bag with ``values`` stacked on top of ``tier``."""
        tier = Tier(tier)
        layer = VariableLayer(tier, source or tier.name.lower(), MappingProxyType(dict(values)))
        return VariableBag(self._layers + (layer,))

    def source_of(self, key: str) -> Optional[VariableLayer]:
        """Return the layer that supplies the effective value of ``key``."""
        for layer in reversed(self._layers):
            if key in layer.values:
                return layer
        return None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._flat)


class HostVars(Mapping):
    """Lazy ``hostvars`` mapping; each host's inventory vars are built on access."""

    def __init__(self, inventory: InventoryManager):
        self._inventory = inventory
        self._cache: Dict[str, Dict[str, Any]] = {}

    def __getitem__(self, host_name: str) -> Dict[str, Any]:
        if host_name not in self._inventory.hosts:
            raise KeyError(host_name)
        if host_name not in self._cache:
            values = self._inventory.get_host_vars(host_name)
            values.setdefault('inventory_hostname', host_name)
            values.setdefault('ansible_host', self._inventory.hosts[host_name].ansible_host)
            self._cache[host_name] = values
        return self._cache[host_name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._inventory.hosts)

    def __len__(self) -> int:
        return len(self._inventory.hosts)


class VariableManager:
    """Assembles the effective variables of a host for a play."""

    def __init__(self, inventory: InventoryManager, extra_vars: Optional[Dict[str, Any]] = None):
        self.inventory = inventory
        self.extra_vars = dict(extra_vars or {})
        self._hostvars = HostVars(inventory)
        self._groups: Optional[Dict[str, List[str]]] = None

    def inventory_layers(self, host: Host) -> List[VariableLayer]:
        """Group layers ('all' first, nearest last) followed by the host layer."""
        layers = [
            VariableLayer(Tier.GROUP, f"group:{group.name}", MappingProxyType(dict(group.vars)))
            for group in self.inventory.get_group_ancestors(host)
            if group.vars
        ]
        layers.append(VariableLayer(Tier.HOST, f"host:{host.name}", MappingProxyType(host.get_vars())))
        return layers

    def magic_vars(self, host: Host, play: Any = None, play_hosts: Optional[List[str]] = None,
                   check_mode: bool = False) -> Dict[str, Any]:
        """Engine-supplied variables that describe the host and the run."""
        if self._groups is None:
            self._groups = {
                name: [h.name for h in self.inventory.get_hosts(name)]
                for name in self.inventory.groups
            }
        groups = self._groups
        if play_hosts is None:
            play_hosts = [h.name for h in self.inventory.get_hosts(getattr(play, 'hosts', 'all'))]
        return {
            'inventory_hostname': host.name,
            'inventory_hostname_short': host.name.split('.')[0],
            'group_names': self.inventory.group_names(host),
            'groups': groups,
            'hostvars': self._hostvars,
            'play_hosts': list(play_hosts),
            'ansible_play_hosts': list(play_hosts),
            'ansible_play_name': getattr(play, 'name', ''),
            'ansible_check_mode': check_mode,
        }

    def effective_vars(
        self,
        host: Host,
        play: Any = None,
        extra_vars: Optional[Dict[str, Any]] = None,
        play_hosts: Optional[List[str]] = None,
        check_mode: bool = False,
    ) -> VariableBag:
        """
        Build the variable bag a host starts a play with.

        Args:
            host: Inventory host
            play: Play supplying role defaults/vars and play vars (optional)
            extra_vars: Runtime extra vars; defaults to the manager's own
            play_hosts: Names of the hosts targeted by the play
            check_mode: Value for ansible_check_mode

        Returns:
            VariableBag with ROLE_DEFAULTS through EXTRA layers
        """
        layers: List[VariableLayer] = []

        if play is not None:
            for role in getattr(play, 'roles', []):
                if role.defaults:
                    layers.append(VariableLayer(Tier.ROLE_DEFAULTS, f"role:{role.name}:defaults",
                                                MappingProxyType(dict(role.defaults))))

        layers.extend(self.inventory_layers(host))

        if play is not None:
            for role in getattr(play, 'roles', []):
                role_vars = dict(role.vars)
                role_vars.update(role.params)
                if role_vars:
                    layers.append(VariableLayer(Tier.ROLE_VARS, f"role:{role.name}:vars",
                                                MappingProxyType(role_vars)))
            if play.vars:
                layers.append(VariableLayer(Tier.PLAY, f"play:{play.name}", MappingProxyType(dict(play.vars))))

        layers.append(VariableLayer(Tier.MAGIC, 'magic',
                                    MappingProxyType(self.magic_vars(host, play, play_hosts, check_mode))))

        extra = self.extra_vars if extra_vars is None else extra_vars
        if extra:
            layers.append(VariableLayer(Tier.EXTRA, 'extra_vars', MappingProxyType(dict(extra))))

        bag = VariableBag(tuple(layers))
        logger.debug("Resolved %d variables for %s from %d layers", len(bag), host.name, len(layers))
        return bag
