import logging

from aws_cdk import (
    Stack,
    aws_ec2 as ec2,
    aws_iam as iam,
    Annotations,
    CfnOutput,
)
from constructs import Construct

from deployment.errors import PolicyViolationError, require_dependencies
from deployment.ingress_chain import CHAIN_ORDER, IngressChain, Tier
from deployment.settings import SecuritySettings

logger = logging.getLogger(__name__)

TASK_PRINCIPAL = "ecs-tasks.amazonaws.com"
EXECUTION_POLICY = "service-role/AmazonECSTaskExecutionRolePolicy"


class SecurityStack(Stack):
    """
    AWS CDK Stack for security groups and the ECS task roles.

    Security groups form a chain that narrows at every hop:
    [Internet] -> edge (ALB) -> compute (ECS tasks) -> data (RDS)

    - edge:    inbound service port from 0.0.0.0/0
    - compute: inbound app port from the edge group only
    - data:    inbound MySQL port from the compute group only

    The chain is validated before any group is declared, and groups are
    created in chain order so no rule can point at a group that does not
    exist yet.

    Roles (both assumable only by ecs-tasks.amazonaws.com):
    - task_role: what the application itself may call (exact S3 read grant)
    - execution_role: image pull + log delivery (AWS managed policy)
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        network,
        settings: SecuritySettings,
        **kwargs,
    ) -> None:
        """
        Initialize the security stack.

        Args:
            scope: The parent construct (usually the app)
            construct_id: The unique identifier for this stack
            network: NetworkStack the security groups attach to
            settings: Ports, edge CIDR and role options
            **kwargs: Additional arguments passed to the Stack base class

        Raises:
            MissingDependencyError: If the network stack is missing
            PolicyViolationError: If the ingress chain or a grant is too wide
        """
        require_dependencies("SecurityStack", network=network)
        super().__init__(scope, construct_id, **kwargs)

        self.chain = IngressChain.standard(
            edge_port=settings.edge_port,
            app_port=settings.app_port,
            db_port=settings.db_port,
            edge_cidr=settings.edge_cidr,
        ).validate()

        # ----------------------------------------------------------------------
        # Security Groups (edge -> compute -> data)
        # ----------------------------------------------------------------------
        descriptions = {
            Tier.EDGE: "ALB security group (HTTP)",
            Tier.COMPUTE: "ECS tasks security group",
            Tier.DATA: "RDS security group",
        }
        construct_ids = {Tier.EDGE: "AlbSg", Tier.COMPUTE: "EcsSg", Tier.DATA: "RdsSg"}

        self.security_groups = {}
        for tier in CHAIN_ORDER:
            group = ec2.SecurityGroup(
                self, construct_ids[tier],
                vpc=network.vpc,
                description=descriptions[tier],
                allow_all_outbound=True,
            )
            for rule in self.chain.rules_for(tier):
                if rule.source_cidr is not None:
                    peer = ec2.Peer.ipv4(rule.source_cidr)
                else:
                    peer = self.security_groups[rule.source_tier]
                group.add_ingress_rule(peer, ec2.Port.tcp(rule.port), rule.description)
            self.security_groups[tier] = group

        self.alb_security_group = self.security_groups[Tier.EDGE]
        self.ecs_security_group = self.security_groups[Tier.COMPUTE]
        self.rds_security_group = self.security_groups[Tier.DATA]

        # ----------------------------------------------------------------------
        # ECS Task Role (application permissions)
        # ----------------------------------------------------------------------
        self.task_role = iam.Role(
            self, "EcsTaskRole",
            assumed_by=iam.ServicePrincipal(TASK_PRINCIPAL),
            description="Task role for ECS tasks (app role)",
        )
        for statement in task_statements(settings.app_bucket_name):
            self.task_role.add_to_policy(statement)

        # ----------------------------------------------------------------------
        # ECS Execution Role (image pull, log delivery)
        # ----------------------------------------------------------------------
        execution_policy = iam.ManagedPolicy.from_aws_managed_policy_name(EXECUTION_POLICY)
        if settings.reuse_task_role_for_execution:
            self.task_role.add_managed_policy(execution_policy)
            self.execution_role = self.task_role
            Annotations.of(self).add_warning_v2(
                "ecs-rds-platform:sharedTaskRole",
                "reuse_task_role_for_execution is set: the task role also acts as the "
                "execution role, so application code holds image-pull and log permissions.",
            )
        else:
            self.execution_role = iam.Role(
                self, "EcsExecutionRole",
                assumed_by=iam.ServicePrincipal(TASK_PRINCIPAL),
                description="Execution role for ECS tasks (image pull, logs)",
                managed_policies=[execution_policy],
            )

        logger.info(
            "Ingress chain: %s",
            ", ".join(f"{r.tier.value}<-{r.source}:{r.port}" for r in self.chain.rules),
        )

        CfnOutput(self, "EcsTaskRoleArn", value=self.task_role.role_arn)


def task_statements(bucket_name):
    """
    Policy statements for the application task role.

    Only exact actions on one named bucket are granted; nothing is added when
    no bucket is configured.

    Raises:
        PolicyViolationError: If the bucket name is a wildcard
    """
    if not bucket_name:
        return []
    if "*" in bucket_name:
        raise PolicyViolationError("SecurityStack", f"task role bucket '{bucket_name}' may not contain wildcards")

    return [
        iam.PolicyStatement(
            actions=["s3:ListBucket"],
            resources=[f"arn:aws:s3:::{bucket_name}"],
        ),
        iam.PolicyStatement(
            actions=["s3:GetObject"],
            resources=[f"arn:aws:s3:::{bucket_name}/*"],
        ),
    ]
