import logging

from aws_cdk import (
    Stack,
    aws_cloudwatch as cloudwatch,
    aws_cloudwatch_actions as cloudwatch_actions,
    aws_elasticloadbalancingv2 as elbv2,
    aws_sns as sns,
    aws_sns_subscriptions as subscriptions,
    CfnOutput,
    Duration,
)
from constructs import Construct

from deployment.errors import require_dependencies
from deployment.settings import MonitoringSettings

logger = logging.getLogger(__name__)

GIB = 1024 ** 3


class MonitoringStack(Stack):
    """
    AWS CDK Stack for alarms on the service and the database.

    Four threshold alarms notify a single SNS topic:
    - EcsCpuAlarm: service CPU saturation
    - EcsPendingAlarm: tasks waiting for placement (scaling backlog)
    - Alb5xxAlarm: 5xx responses from the targets
    - RdsStorageAlarm: free storage below a fraction of allocated storage

    CPU and pending-task alarms treat missing data as not breaching, so cold
    starts and idle periods stay quiet. The 5xx and storage alarms keep the
    default (missing data is evaluated as missing).
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        service,
        database,
        settings: MonitoringSettings,
        **kwargs,
    ) -> None:
        """
        Initialize the monitoring stack.

        Args:
            scope: The parent construct (usually the app)
            construct_id: The unique identifier for this stack
            service: ServiceStack exposing the ECS service and target group
            database: DatabaseStack exposing the DB instance
            settings: Thresholds, evaluation periods and alarm e-mail
            **kwargs: Additional arguments passed to the Stack base class

        Raises:
            MissingDependencyError: If a metric source has not been built
        """
        require_dependencies("MonitoringStack", service=service, database=database)
        require_dependencies(
            "MonitoringStack",
            ecs_service=getattr(service, "service", None),
            target_group=getattr(service, "target_group", None),
            db_instance=getattr(database, "instance", None),
            allocated_storage_gib=getattr(database, "allocated_storage_gib", None),
        )
        super().__init__(scope, construct_id, **kwargs)

        # ----------------------------------------------------------------------
        # Notification Channel
        # ----------------------------------------------------------------------
        self.topic = sns.Topic(self, "AlarmTopic")
        if settings.alarm_email:
            self.topic.add_subscription(subscriptions.EmailSubscription(settings.alarm_email))
        notify = cloudwatch_actions.SnsAction(self.topic)

        # ----------------------------------------------------------------------
        # Alarms
        # ----------------------------------------------------------------------
        self.alarms = {}

        self.alarms["cpu"] = cloudwatch.Alarm(
            self, "EcsCpuAlarm",
            metric=service.service.metric_cpu_utilization(),
            threshold=settings.cpu_threshold,
            evaluation_periods=settings.cpu_evaluation_periods,
            comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
            alarm_description="ECS service CPU saturation",
        )

        # Pending tasks > 0 means scaling is failing or lagging
        self.alarms["pending"] = cloudwatch.Alarm(
            self, "EcsPendingAlarm",
            metric=service.pending_task_metric(),
            threshold=settings.pending_threshold,
            evaluation_periods=settings.pending_evaluation_periods,
            comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
            alarm_description="ECS tasks pending placement",
        )

        # 5 one-minute periods in a row
        self.alarms["target_5xx"] = cloudwatch.Alarm(
            self, "Alb5xxAlarm",
            metric=service.target_group.metrics.http_code_target(
                elbv2.HttpCodeTarget.TARGET_5XX_COUNT,
                period=Duration.minutes(1),
            ),
            threshold=settings.target_5xx_threshold,
            evaluation_periods=settings.target_5xx_evaluation_periods,
            comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD,
            alarm_description="5xx responses from targets",
        )

        self.storage_threshold_bytes = free_storage_threshold(
            database.allocated_storage_gib, settings.free_storage_fraction
        )
        self.alarms["storage"] = cloudwatch.Alarm(
            self, "RdsStorageAlarm",
            metric=database.instance.metric_free_storage_space(),
            threshold=self.storage_threshold_bytes,
            evaluation_periods=settings.storage_evaluation_periods,
            comparison_operator=cloudwatch.ComparisonOperator.LESS_THAN_THRESHOLD,
            alarm_description="RDS free storage running out",
        )

        for alarm in self.alarms.values():
            alarm.add_alarm_action(notify)

        logger.info("Monitoring: %d alarms -> 1 topic", len(self.alarms))

        CfnOutput(self, "AlarmTopicArn", value=self.topic.topic_arn)


def free_storage_threshold(allocated_gib: int, fraction: float) -> int:
    """Bytes of free storage below which the storage alarm fires (20 GiB at 0.2 -> 4 GiB)."""
    return int(round(allocated_gib * fraction * GIB))
