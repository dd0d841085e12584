import json
import logging

from aws_cdk import (
    Stack,
    aws_ec2 as ec2,
    aws_rds as rds,
    aws_secretsmanager as secretsmanager,
    Annotations,
    CfnOutput,
    Duration,
    RemovalPolicy,
)
from constructs import Construct

from deployment.errors import require_dependencies
from deployment.settings import DatabaseSettings

logger = logging.getLogger(__name__)


class DatabaseStack(Stack):
    """
    AWS CDK Stack for the MySQL database.

    The instance lives only in the private subnets, accepts traffic only
    through the data-tier security group, and takes its master credentials
    from a generated Secrets Manager secret (no static password anywhere).

    Removal behaviour is taken from ``DatabaseSettings.removal``. The sandbox
    profile destroys the instance with the stack (no final snapshot, no
    deletion protection); synthesis emits a warning whenever that is the case.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        network,
        data_security_group: ec2.ISecurityGroup,
        settings: DatabaseSettings,
        **kwargs,
    ) -> None:
        """
        Initialize the database stack.

        Args:
            scope: The parent construct (usually the app)
            construct_id: The unique identifier for this stack
            network: NetworkStack providing the VPC and private subnets
            data_security_group: Data-tier group from SecurityStack
            settings: Engine, storage and removal options
            **kwargs: Additional arguments passed to the Stack base class

        Raises:
            MissingDependencyError: If the network or security group is missing
        """
        require_dependencies("DatabaseStack", network=network, data_security_group=data_security_group)
        super().__init__(scope, construct_id, **kwargs)

        private_subnets = ec2.SubnetSelection(subnets=list(network.private_subnets))
        removal_policy = settings.removal.removal_policy
        self.allocated_storage_gib = settings.allocated_storage_gib

        # ----------------------------------------------------------------------
        # Generated Credentials
        # ----------------------------------------------------------------------
        self.secret = secretsmanager.Secret(
            self, "RdsSecret",
            secret_name=f"{self.stack_name}-db-credentials",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                secret_string_template=json.dumps({"username": settings.master_username}),
                exclude_punctuation=True,
                include_space=False,
                generate_string_key="password",
            ),
        )

        # ----------------------------------------------------------------------
        # Subnet Group (private subnets only)
        # ----------------------------------------------------------------------
        self.subnet_group = rds.SubnetGroup(
            self, "RdsSubnetGroup",
            vpc=network.vpc,
            vpc_subnets=private_subnets,
            description="Subnet group for RDS",
            # Subnet groups cannot be snapshotted; keep them unless destroying
            removal_policy=RemovalPolicy.DESTROY if settings.removal.is_destructive else RemovalPolicy.RETAIN,
        )

        # ----------------------------------------------------------------------
        # Database Instance
        # ----------------------------------------------------------------------
        self.instance = rds.DatabaseInstance(
            self, "AppRds",
            engine=rds.DatabaseInstanceEngine.mysql(
                version=rds.MysqlEngineVersion.of(settings.engine_version, settings.engine_major_version)
            ),
            instance_type=ec2.InstanceType(settings.instance_type),
            vpc=network.vpc,
            vpc_subnets=private_subnets,
            subnet_group=self.subnet_group,
            security_groups=[data_security_group],
            credentials=rds.Credentials.from_secret(self.secret),
            allocated_storage=settings.allocated_storage_gib,
            storage_type=rds.StorageType.GP3,
            multi_az=settings.multi_az,
            publicly_accessible=False,
            backup_retention=Duration.days(settings.backup_retention_days),
            deletion_protection=settings.deletion_protection,
            removal_policy=removal_policy,
        )

        if settings.removal.is_destructive:
            Annotations.of(self).add_warning_v2(
                "ecs-rds-platform:destructiveDatabase",
                "Database removal mode is 'destroy': the instance is deleted with the stack, "
                "without a final snapshot or deletion protection. Use the production profile "
                "for any environment holding real data.",
            )
        logger.info(
            "Database: MySQL %s, %d GiB, multi-AZ=%s, removal=%s",
            settings.engine_version, settings.allocated_storage_gib, settings.multi_az, settings.removal.value,
        )

        CfnOutput(self, "RdsEndpoint", value=self.instance.db_instance_endpoint_address)
        CfnOutput(self, "RdsSecretArn", value=self.secret.secret_arn)
