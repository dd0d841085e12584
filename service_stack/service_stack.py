import logging

from aws_cdk import (
    Stack,
    aws_applicationautoscaling as appscaling,
    aws_cloudwatch as cloudwatch,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_logs as logs,
    CfnOutput,
    Duration,
)
from constructs import Construct

from deployment.errors import require_dependencies
from deployment.settings import BACKLOG_STEPS, ScalingSettings, ServiceSettings

logger = logging.getLogger(__name__)


class ServiceStack(Stack):
    """
    AWS CDK Stack for the container service and its public load balancer.

    Architecture:
    [Internet] -> ALB (public subnets, edge SG) -> Target Group -> Fargate tasks
                                                   (private subnets, compute SG)

    - ECS cluster with Container Insights (needed for PendingTaskCount)
    - Fargate task definition with separate task and execution roles
    - CloudWatch log group with bounded retention
    - Fargate service, no public IPs, fixed desired count
    - HTTP listener whose default action is a plain 404, so traffic that
      matches no rule never reaches a task by accident
    - Target group with an active health check, registered through a
      path-pattern rule
    - Autoscaling between min and max tasks: CPU target tracking plus
      optional step scaling on pending tasks
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        network,
        edge_security_group: ec2.ISecurityGroup,
        compute_security_group: ec2.ISecurityGroup,
        task_role: iam.IRole,
        execution_role: iam.IRole,
        settings: ServiceSettings,
        scaling: ScalingSettings,
        **kwargs,
    ) -> None:
        """
        Initialize the service stack.

        Args:
            scope: The parent construct (usually the app)
            construct_id: The unique identifier for this stack
            network: NetworkStack providing VPC, subnets and internet connectivity
            edge_security_group: Group attached to the load balancer
            compute_security_group: Group attached to the tasks
            task_role: Role the application runs as
            execution_role: Role ECS uses to pull images and ship logs
            settings: Container, listener and health check options
            scaling: Capacity bounds and scaling triggers
            **kwargs: Additional arguments passed to the Stack base class

        Raises:
            MissingDependencyError: If any upstream handle is missing
            ConfigurationError: If the capacity bounds are inconsistent
        """
        require_dependencies(
            "ServiceStack",
            network=network,
            edge_security_group=edge_security_group,
            compute_security_group=compute_security_group,
            task_role=task_role,
            execution_role=execution_role,
        )
        scaling.validate(settings.desired_count)
        super().__init__(scope, construct_id, **kwargs)

        # ----------------------------------------------------------------------
        # ECS Cluster
        # ----------------------------------------------------------------------
        self.cluster = ecs.Cluster(
            self, "EcsCluster",
            vpc=network.vpc,
            container_insights_v2=ecs.ContainerInsights.ENABLED,
        )

        # ----------------------------------------------------------------------
        # Task Definition
        # ----------------------------------------------------------------------
        # Roles are owned by SecurityStack. Referencing them immutably keeps
        # their permissions exactly as declared there; the managed execution
        # policy already covers log delivery.
        self.task_definition = ecs.FargateTaskDefinition(
            self, "TaskDef",
            cpu=settings.cpu,
            memory_limit_mib=settings.memory_mib,
            task_role=iam.Role.from_role_arn(self, "TaskRoleRef", task_role.role_arn, mutable=False),
            execution_role=iam.Role.from_role_arn(self, "ExecutionRoleRef", execution_role.role_arn, mutable=False),
        )

        self.log_group = logs.LogGroup(
            self, "AppLogGroup",
            retention=settings.log_retention,
            removal_policy=settings.log_removal.removal_policy,
        )

        container = self.task_definition.add_container(
            "AppContainer",
            image=ecs.ContainerImage.from_registry(settings.container_image),
            logging=ecs.LogDrivers.aws_logs(stream_prefix="app", log_group=self.log_group),
            environment={},
        )
        container.add_port_mappings(ecs.PortMapping(container_port=settings.container_port))

        # ----------------------------------------------------------------------
        # Fargate Service (private subnets, no public IP)
        # ----------------------------------------------------------------------
        self.service = ecs.FargateService(
            self, "FargateService",
            cluster=self.cluster,
            task_definition=self.task_definition,
            desired_count=settings.desired_count,
            assign_public_ip=False,
            security_groups=[compute_security_group],
            vpc_subnets=ec2.SubnetSelection(subnets=list(network.private_subnets)),
        )

        # ----------------------------------------------------------------------
        # Application Load Balancer (public subnets)
        # ----------------------------------------------------------------------
        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self, "AppALB",
            vpc=network.vpc,
            internet_facing=True,
            security_group=edge_security_group,
            vpc_subnets=ec2.SubnetSelection(subnets=list(network.public_subnets)),
        )
        self.load_balancer.node.add_dependency(network.internet_connectivity)

        self.listener = self.load_balancer.add_listener(
            "HttpListener",
            port=settings.listener_port,
            open=False,  # Ingress is declared by the edge security group
            default_action=elbv2.ListenerAction.fixed_response(
                404,
                content_type="text/plain",
                message_body="Not found",
            ),
        )

        # ----------------------------------------------------------------------
        # Target Group with Health Check
        # ----------------------------------------------------------------------
        self.target_group = elbv2.ApplicationTargetGroup(
            self, "AppTG",
            vpc=network.vpc,
            port=settings.container_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            targets=[self.service],
            health_check=elbv2.HealthCheck(
                path=settings.health_check_path,
                healthy_http_codes=settings.healthy_http_codes,
                interval=Duration.seconds(settings.health_check_interval_seconds),
                timeout=Duration.seconds(settings.health_check_timeout_seconds),
            ),
        )

        self.listener.add_target_groups(
            "AddTG",
            target_groups=[self.target_group],
            priority=settings.route_priority,
            conditions=[elbv2.ListenerCondition.path_patterns(list(settings.route_path_patterns))],
        )

        # ----------------------------------------------------------------------
        # Auto Scaling
        # ----------------------------------------------------------------------
        self.scalable_target = self.service.auto_scale_task_count(
            min_capacity=scaling.min_capacity,
            max_capacity=scaling.max_capacity,
        )
        self.scalable_target.scale_on_cpu_utilization(
            "CpuScaling",
            target_utilization_percent=scaling.cpu_target_percent,
            scale_in_cooldown=Duration.seconds(scaling.scale_in_cooldown_seconds),
            scale_out_cooldown=Duration.seconds(scaling.scale_out_cooldown_seconds),
        )

        if scaling.backlog_scaling:
            # Application Auto Scaling applies whichever policy asks for the
            # most capacity, so this only ever adds on top of CPU scaling.
            self.scalable_target.scale_on_metric(
                "PendingTasksScaling",
                metric=self.pending_task_metric(),
                scaling_steps=[
                    appscaling.ScalingInterval(change=step.change, lower=step.lower, upper=step.upper)
                    for step in BACKLOG_STEPS
                ],
                adjustment_type=appscaling.AdjustmentType.CHANGE_IN_CAPACITY,
            )

        logger.info(
            "Service: %s x%d behind :%d, scaling %d..%d at %s%% CPU",
            settings.container_image, settings.desired_count, settings.listener_port,
            scaling.min_capacity, scaling.max_capacity, scaling.cpu_target_percent,
        )

        CfnOutput(self, "LoadBalancerDns", value=self.load_balancer.load_balancer_dns_name)

    def pending_task_metric(self) -> cloudwatch.Metric:
        """Tasks waiting to be placed, from Container Insights (1-minute average)."""
        return cloudwatch.Metric(
            namespace="ECS/ContainerInsights",
            metric_name="PendingTaskCount",
            dimensions_map={
                "ClusterName": self.cluster.cluster_name,
                "ServiceName": self.service.service_name,
            },
            statistic="Average",
            period=Duration.minutes(1),
        )
