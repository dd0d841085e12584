"""
Three-tier ingress chain: edge <- any, compute <- edge, data <- compute.

The chain is declared as data first, validated, and only then turned into
security groups by the security stack.
"""
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from deployment.errors import ConfigurationError, PolicyViolationError

ANY_IPV4 = "0.0.0.0/0"
COMPONENT = "SecurityStack"


class Tier(str, Enum):
    EDGE = "edge"
    COMPUTE = "compute"
    DATA = "data"


# Build order. A tier may only take traffic from the tier right before it.
CHAIN_ORDER = (Tier.EDGE, Tier.COMPUTE, Tier.DATA)


@dataclass(frozen=True)
class IngressRule:
    """
    One allowed inbound TCP port on a tier.

    Exactly one of ``source_tier`` or ``source_cidr`` is set.
    """

    tier: Tier
    port: int
    source_tier: Optional[Tier] = None
    source_cidr: Optional[str] = None
    description: str = ""

    @property
    def source(self) -> str:
        return self.source_tier.value if self.source_tier is not None else self.source_cidr


@dataclass(frozen=True)
class IngressChain:
    rules: Tuple[IngressRule, ...]

    @classmethod
    def standard(
        cls,
        edge_port: int,
        app_port: int,
        db_port: int,
        edge_cidr: str = ANY_IPV4,
    ) -> "IngressChain":
        return cls(rules=(
            IngressRule(Tier.EDGE, edge_port, source_cidr=edge_cidr,
                        description=f"Allow HTTP from {edge_cidr}"),
            IngressRule(Tier.COMPUTE, app_port, source_tier=Tier.EDGE,
                        description="Allow ALB -> ECS"),
            IngressRule(Tier.DATA, db_port, source_tier=Tier.COMPUTE,
                        description="Allow ECS -> RDS (MySQL)"),
        ))

    def validate(self) -> "IngressChain":
        """
        Check every rule against the chain.

        Returns:
            The same chain, so calls can be chained

        Raises:
            PolicyViolationError: A rule widens access or skips a hop
            ConfigurationError: A port is out of range
        """
        for rule in self.rules:
            if not 0 < rule.port < 65536:
                raise ConfigurationError(f"{COMPONENT}: port {rule.port} on {rule.tier.value} tier is out of range")

            if (rule.source_tier is None) == (rule.source_cidr is None):
                raise PolicyViolationError(
                    COMPONENT, f"{rule.tier.value} rule must name exactly one source"
                )

            if rule.source_cidr is not None:
                if rule.tier is not Tier.EDGE:
                    raise PolicyViolationError(
                        COMPONENT,
                        f"{rule.tier.value} tier may not accept traffic from {rule.source_cidr}",
                    )
                continue

            position = CHAIN_ORDER.index(rule.tier)
            source_position = CHAIN_ORDER.index(rule.source_tier)
            if source_position >= position:
                raise PolicyViolationError(
                    COMPONENT,
                    f"{rule.tier.value} tier references {rule.source_tier.value} tier, "
                    f"which is not built before it",
                )
            if source_position != position - 1:
                raise PolicyViolationError(
                    COMPONENT,
                    f"{rule.tier.value} tier skips a hop by accepting {rule.source_tier.value} traffic",
                )
        return self

    def rules_for(self, tier: Tier) -> Tuple[IngressRule, ...]:
        return tuple(rule for rule in self.rules if rule.tier is tier)

    def allowed_sources(self, tier: Tier) -> FrozenSet[str]:
        return frozenset(rule.source for rule in self.rules_for(tier))
