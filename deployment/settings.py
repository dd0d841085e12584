"""
Deployment settings for every stack in the app.

Each stack takes one frozen settings record. ``load_settings`` builds the full
set from CDK context (``cdk.json`` or ``cdk synth -c key=value``) on top of a
named profile:

- sandbox: throwaway environment. The database and log group are destroyed
  with the stack and no final snapshot is taken. DatabaseStack says so in a
  synth warning.
- production: final snapshot, deletion protection, retained logs.
"""
import ipaddress
import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple

from aws_cdk import Environment, RemovalPolicy, aws_logs as logs

from deployment.errors import ConfigurationError
from deployment.network_plan import SubnetPlan, SubnetSpec, SubnetTier
from deployment.scaling import (
    CapacityModel,
    ScalingStep,
    StepTrigger,
    TargetTrackingTrigger,
)

logger = logging.getLogger(__name__)

DEFAULT_REGION = "ap-northeast-1"
DEFAULT_ZONE_SUFFIXES = ("a", "c")


class RemovalMode(str, Enum):
    DESTROY = "destroy"
    SNAPSHOT = "snapshot"
    RETAIN = "retain"

    @property
    def removal_policy(self) -> RemovalPolicy:
        return {
            RemovalMode.DESTROY: RemovalPolicy.DESTROY,
            RemovalMode.SNAPSHOT: RemovalPolicy.SNAPSHOT,
            RemovalMode.RETAIN: RemovalPolicy.RETAIN,
        }[self]

    @property
    def is_destructive(self) -> bool:
        return self is RemovalMode.DESTROY


def default_subnets(vpc_cidr: str, availability_zones) -> Tuple[SubnetSpec, ...]:
    """
    Carve one public /20 per zone from the bottom of the VPC block and one
    private /20 per zone from the upper half.

    For 10.0.0.0/16 and two zones this gives 10.0.0.0/20, 10.0.16.0/20
    (public) and 10.0.128.0/20, 10.0.144.0/20 (private).
    """
    blocks = list(ipaddress.ip_network(vpc_cidr).subnets(new_prefix=20))
    half = len(blocks) // 2
    if len(availability_zones) > half:
        raise ConfigurationError(
            f"NetworkStack: {vpc_cidr} is too small for {len(availability_zones)} zones of /20 subnets"
        )

    public = []
    private = []
    for index, zone in enumerate(availability_zones):
        suffix = zone[-1].upper()
        public.append(SubnetSpec(f"PublicSubnet{suffix}", zone, str(blocks[index]), SubnetTier.PUBLIC))
        private.append(SubnetSpec(f"PrivateSubnet{suffix}", zone, str(blocks[half + index]), SubnetTier.PRIVATE))
    return tuple(public + private)


@dataclass(frozen=True)
class NetworkSettings:
    vpc_cidr: str = "10.0.0.0/16"
    subnets: Tuple[SubnetSpec, ...] = ()

    def plan(self) -> SubnetPlan:
        return SubnetPlan.build(self.vpc_cidr, self.subnets)


@dataclass(frozen=True)
class SecuritySettings:
    """
    Ports and grants for the three filtering tiers and the two task roles.

    Attributes:
        edge_port: Port the load balancer listens on
        app_port: Container port the load balancer forwards to
        db_port: Database port (MySQL)
        edge_cidr: Who may reach the load balancer
        app_bucket_name: Bucket the application may read; no S3 grant when None
        reuse_task_role_for_execution: Opt-in shortcut that uses the task role
            as execution role too
    """

    edge_port: int = 80
    app_port: int = 80
    db_port: int = 3306
    edge_cidr: str = "0.0.0.0/0"
    app_bucket_name: Optional[str] = None
    reuse_task_role_for_execution: bool = False


@dataclass(frozen=True)
class DatabaseSettings:
    engine_version: str = "8.0.33"
    engine_major_version: str = "8.0"
    instance_type: str = "t3.micro"
    allocated_storage_gib: int = 20
    multi_az: bool = True
    backup_retention_days: int = 7
    master_username: str = "dbadmin"
    removal: RemovalMode = RemovalMode.DESTROY

    @property
    def deletion_protection(self) -> bool:
        return not self.removal.is_destructive


@dataclass(frozen=True)
class ServiceSettings:
    container_image: str = "nginx:latest"
    container_port: int = 80
    cpu: int = 256
    memory_mib: int = 512
    desired_count: int = 2
    log_retention: logs.RetentionDays = logs.RetentionDays.ONE_WEEK
    log_removal: RemovalMode = RemovalMode.DESTROY
    listener_port: int = 80
    health_check_path: str = "/healthcheck"
    healthy_http_codes: str = "200"
    health_check_interval_seconds: int = 30
    health_check_timeout_seconds: int = 5
    route_path_patterns: Tuple[str, ...] = ("/*",)
    route_priority: int = 10


@dataclass(frozen=True)
class ScalingSettings:
    min_capacity: int = 2
    max_capacity: int = 6
    cpu_target_percent: float = 70
    scale_in_cooldown_seconds: int = 60
    scale_out_cooldown_seconds: int = 60
    backlog_scaling: bool = True

    def validate(self, desired_count: int) -> "ScalingSettings":
        if not 1 <= self.min_capacity <= desired_count <= self.max_capacity:
            raise ConfigurationError(
                f"ServiceStack: capacity must satisfy 1 <= min ({self.min_capacity}) "
                f"<= desired ({desired_count}) <= max ({self.max_capacity})"
            )
        if not 0 < self.cpu_target_percent <= 100:
            raise ConfigurationError(
                f"ServiceStack: CPU target {self.cpu_target_percent} must be in (0, 100]"
            )
        if self.scale_in_cooldown_seconds < 0 or self.scale_out_cooldown_seconds < 0:
            raise ConfigurationError("ServiceStack: cooldowns cannot be negative")
        return self

    def capacity_model(self) -> CapacityModel:
        """Model of the triggers the service stack declares from these settings."""
        triggers = [
            TargetTrackingTrigger(
                metric_name="CPUUtilization",
                target=self.cpu_target_percent,
                scale_in_cooldown=self.scale_in_cooldown_seconds,
                scale_out_cooldown=self.scale_out_cooldown_seconds,
            )
        ]
        if self.backlog_scaling:
            triggers.append(StepTrigger(metric_name="PendingTaskCount", steps=BACKLOG_STEPS))
        return CapacityModel(self.min_capacity, self.max_capacity, tuple(triggers))


# No change while nothing is pending, one extra task once a task is pending.
BACKLOG_STEPS = (
    ScalingStep(change=0, upper=0),
    ScalingStep(change=1, lower=1),
)


@dataclass(frozen=True)
class MonitoringSettings:
    cpu_threshold: float = 80
    cpu_evaluation_periods: int = 2
    pending_threshold: float = 1
    pending_evaluation_periods: int = 2
    target_5xx_threshold: float = 5
    target_5xx_evaluation_periods: int = 5
    free_storage_fraction: float = 0.2
    storage_evaluation_periods: int = 1
    alarm_email: Optional[str] = None


@dataclass(frozen=True)
class DeploymentSettings:
    profile: str
    project: str
    region: str
    account: Optional[str] = None
    network: NetworkSettings = field(default_factory=NetworkSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    service: ServiceSettings = field(default_factory=ServiceSettings)
    scaling: ScalingSettings = field(default_factory=ScalingSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    @property
    def env(self) -> Environment:
        return Environment(account=self.account, region=self.region)

    def validate(self) -> "DeploymentSettings":
        self.network.plan()
        self.scaling.validate(self.service.desired_count)
        # The load balancer opens target ports on the compute group by itself;
        # matching ports keep those rules identical to the declared chain.
        if self.security.app_port != self.service.container_port:
            raise ConfigurationError(
                f"ServiceStack: container port {self.service.container_port} differs from "
                f"compute-tier port {self.security.app_port}"
            )
        if self.security.edge_port != self.service.listener_port:
            raise ConfigurationError(
                f"ServiceStack: listener port {self.service.listener_port} differs from "
                f"edge-tier port {self.security.edge_port}"
            )
        if not 0 < self.monitoring.free_storage_fraction < 1:
            raise ConfigurationError(
                f"MonitoringStack: free storage fraction {self.monitoring.free_storage_fraction} must be in (0, 1)"
            )
        return self


def _sandbox(settings: DeploymentSettings) -> DeploymentSettings:
    return settings


def _production(settings: DeploymentSettings) -> DeploymentSettings:
    return replace(
        settings,
        database=replace(settings.database, removal=RemovalMode.SNAPSHOT),
        service=replace(settings.service, log_removal=RemovalMode.RETAIN),
    )


PROFILES = {
    "sandbox": _sandbox,
    "production": _production,
}


def build_settings(
    profile: str = "sandbox",
    project: str = "ecs-rds-platform",
    region: str = DEFAULT_REGION,
    account: Optional[str] = None,
    availability_zones=None,
    app_bucket_name: Optional[str] = None,
    alarm_email: Optional[str] = None,
    container_image: Optional[str] = None,
    reuse_task_role_for_execution: bool = False,
) -> DeploymentSettings:
    """
    Assemble and validate the settings for one profile.

    Raises:
        ConfigurationError: Unknown profile or invalid values
    """
    if profile not in PROFILES:
        raise ConfigurationError(f"Unknown profile '{profile}', expected one of {sorted(PROFILES)}")

    zones = tuple(availability_zones or (f"{region}{suffix}" for suffix in DEFAULT_ZONE_SUFFIXES))
    network = NetworkSettings()
    network = replace(network, subnets=default_subnets(network.vpc_cidr, zones))

    service = ServiceSettings()
    if container_image:
        service = replace(service, container_image=container_image)

    settings = DeploymentSettings(
        profile=profile,
        project=project,
        region=region,
        account=account,
        network=network,
        security=SecuritySettings(
            app_bucket_name=app_bucket_name,
            reuse_task_role_for_execution=reuse_task_role_for_execution,
        ),
        service=service,
        monitoring=MonitoringSettings(alarm_email=alarm_email),
    )
    return PROFILES[profile](settings).validate()


def load_settings(app) -> DeploymentSettings:
    """
    Read deployment settings from CDK context.

    Context keys: profile, project, region, account, availability_zones,
    app_bucket_name, alarm_email, container_image,
    reuse_task_role_for_execution.
    """
    context = app.node.try_get_context

    zones = context("availability_zones")
    if isinstance(zones, str):
        zones = [zone.strip() for zone in zones.split(",") if zone.strip()]

    settings = build_settings(
        profile=context("profile") or "sandbox",
        project=context("project") or "ecs-rds-platform",
        region=context("region") or os.environ.get("CDK_DEFAULT_REGION") or DEFAULT_REGION,
        account=context("account") or os.environ.get("CDK_DEFAULT_ACCOUNT"),
        availability_zones=zones,
        app_bucket_name=context("app_bucket_name"),
        alarm_email=context("alarm_email"),
        container_image=context("container_image"),
        reuse_task_role_for_execution=_as_bool(context("reuse_task_role_for_execution")),
    )
    logger.info("Loaded '%s' profile for %s in %s", settings.profile, settings.project, settings.region)
    return settings


def _as_bool(value) -> bool:
    # -c flags arrive as strings, cdk.json values as JSON booleans
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)
