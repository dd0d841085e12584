"""
Wire the five stacks into one deployment graph.

Order: network -> security -> (database, service) -> monitoring. Each stack
only receives handles of stacks built before it, and the stack dependencies
are declared explicitly on top of the ones CDK infers from cross-stack
references.
"""
import logging
from dataclasses import dataclass

from constructs import Construct

from database_stack.database_stack import DatabaseStack
from deployment.ingress_chain import Tier
from deployment.settings import DeploymentSettings
from monitoring_stack.monitoring_stack import MonitoringStack
from network_stack.network_stack import NetworkStack
from security_stack.security_stack import SecurityStack
from service_stack.service_stack import ServiceStack

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentGraph:
    network: NetworkStack
    security: SecurityStack
    database: DatabaseStack
    service: ServiceStack
    monitoring: MonitoringStack

    @property
    def stacks(self):
        return (self.network, self.security, self.database, self.service, self.monitoring)


def build_graph(app: Construct, settings: DeploymentSettings) -> DeploymentGraph:
    """
    Declare every stack of the platform under ``app``.

    Args:
        app: The CDK app (or any construct scope, in tests)
        settings: Validated deployment settings

    Returns:
        DeploymentGraph: The five stacks in build order
    """
    env = settings.env

    # 1. VPC
    network = NetworkStack(app, "NetworkStack", settings=settings.network, env=env)

    # 2. Security groups and task roles
    security = SecurityStack(app, "SecurityStack", network=network, settings=settings.security, env=env)
    security.node.add_dependency(network)

    # 3. Database
    database = DatabaseStack(
        app, "DatabaseStack",
        network=network,
        data_security_group=security.security_groups[Tier.DATA],
        settings=settings.database,
        env=env,
    )
    database.node.add_dependency(security)

    # 4. ECS service behind the load balancer
    service = ServiceStack(
        app, "ServiceStack",
        network=network,
        edge_security_group=security.security_groups[Tier.EDGE],
        compute_security_group=security.security_groups[Tier.COMPUTE],
        task_role=security.task_role,
        execution_role=security.execution_role,
        settings=settings.service,
        scaling=settings.scaling,
        env=env,
    )
    service.node.add_dependency(security)

    # 5. Alarms
    monitoring = MonitoringStack(
        app, "MonitoringStack",
        service=service,
        database=database,
        settings=settings.monitoring,
        env=env,
    )
    monitoring.node.add_dependency(service)
    monitoring.node.add_dependency(database)

    logger.info("Declared %s", " -> ".join(s.node.id for s in (network, security, database, service, monitoring)))
    return DeploymentGraph(network, security, database, service, monitoring)
