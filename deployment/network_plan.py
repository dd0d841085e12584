"""
Subnet plan for the network stack.

The plan owns subnet classification from the start: every subnet is declared
with its tier, validated against the VPC address block, and frozen. The
network stack materialises a plan as-is and never appends to it afterwards.
"""
import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Tuple

from deployment.errors import TopologyError

logger = logging.getLogger(__name__)

DEFAULT_ROUTE = "0.0.0.0/0"
INTERNET_GATEWAY = "internet-gateway"


class SubnetTier(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


@dataclass(frozen=True)
class SubnetSpec:
    """One carved-out address range in a single availability zone."""

    name: str
    availability_zone: str
    cidr: str
    tier: SubnetTier

    @property
    def is_public(self) -> bool:
        return self.tier is SubnetTier.PUBLIC


@dataclass(frozen=True)
class Route:
    destination: str
    target: str


@dataclass(frozen=True)
class SubnetPlan:
    """
    Validated, immutable subnet layout for one VPC.

    Build it with ``SubnetPlan.build``; the constructor itself does no checks.

    Attributes:
        vpc_cidr: Address block of the VPC
        subnets: Every subnet in declaration order
    """

    vpc_cidr: str
    subnets: Tuple[SubnetSpec, ...]

    @classmethod
    def build(cls, vpc_cidr: str, subnets: Iterable[SubnetSpec]) -> "SubnetPlan":
        subnets = tuple(subnets)
        vpc_network = _parse_network(vpc_cidr, "VPC")

        names = set()
        parsed = []
        for subnet in subnets:
            if subnet.name in names:
                raise TopologyError(f"NetworkStack: subnet name '{subnet.name}' is declared twice")
            names.add(subnet.name)

            network = _parse_network(subnet.cidr, subnet.name)
            if not network.subnet_of(vpc_network):
                raise TopologyError(
                    f"NetworkStack: subnet {subnet.name} ({subnet.cidr}) is outside VPC {vpc_cidr}"
                )
            for other_name, other in parsed:
                if network.overlaps(other):
                    raise TopologyError(
                        f"NetworkStack: subnet {subnet.name} ({subnet.cidr}) overlaps {other_name}"
                    )
            parsed.append((subnet.name, network))

        zones = _zones_in_order(subnets)
        if len(zones) < 2:
            raise TopologyError("NetworkStack: at least two availability zones are required")

        for zone in zones:
            for tier in SubnetTier:
                count = sum(1 for s in subnets if s.availability_zone == zone and s.tier is tier)
                if count != 1:
                    raise TopologyError(
                        f"NetworkStack: availability zone {zone} needs exactly one "
                        f"{tier.value} subnet, found {count}"
                    )

        logger.debug("Subnet plan for %s: %d subnets across %s", vpc_cidr, len(subnets), zones)
        return cls(vpc_cidr=vpc_cidr, subnets=subnets)

    @property
    def availability_zones(self) -> List[str]:
        return _zones_in_order(self.subnets)

    @property
    def public(self) -> Tuple[SubnetSpec, ...]:
        return self.subnets_in(SubnetTier.PUBLIC)

    @property
    def private(self) -> Tuple[SubnetSpec, ...]:
        return self.subnets_in(SubnetTier.PRIVATE)

    def subnets_in(self, tier: SubnetTier) -> Tuple[SubnetSpec, ...]:
        by_zone = {s.availability_zone: s for s in self.subnets if s.tier is tier}
        return tuple(by_zone[zone] for zone in self.availability_zones)

    def routes_for(self, tier: SubnetTier) -> Tuple[Route, ...]:
        """
        Routes of the tier's route table, besides the implicit local route.

        Private subnets get none: there is no NAT gateway, and storage
        traffic goes through the S3 gateway endpoint instead.
        """
        if tier is SubnetTier.PUBLIC:
            return (Route(destination=DEFAULT_ROUTE, target=INTERNET_GATEWAY),)
        return ()


def _parse_network(cidr: str, owner: str):
    try:
        return ipaddress.ip_network(cidr, strict=True)
    except ValueError as e:
        raise TopologyError(f"NetworkStack: invalid CIDR '{cidr}' for {owner}: {e}") from e


def _zones_in_order(subnets) -> List[str]:
    zones = []
    for subnet in subnets:
        if subnet.availability_zone not in zones:
            zones.append(subnet.availability_zone)
    return zones
