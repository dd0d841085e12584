import json
from dataclasses import replace

import aws_cdk.assertions as assertions
import pytest

from deployment.errors import ConfigurationError, MissingDependencyError
from deployment.ingress_chain import Tier
from deployment.settings import ScalingSettings
from service_stack.service_stack import ServiceStack


@pytest.fixture
def template(graph):
    return assertions.Template.from_stack(graph.service)


def build_service(graph, settings, **overrides):
    kwargs = dict(
        network=graph.network,
        edge_security_group=graph.security.security_groups[Tier.EDGE],
        compute_security_group=graph.security.security_groups[Tier.COMPUTE],
        task_role=graph.security.task_role,
        execution_role=graph.security.execution_role,
        settings=settings.service,
        scaling=settings.scaling,
    )
    kwargs.update(overrides)
    return ServiceStack(graph.network.node.scope, "ExtraService", env=settings.env, **kwargs)


def test_cluster_has_container_insights(template):
    template.resource_count_is("AWS::ECS::Cluster", 1)
    template.has_resource_properties("AWS::ECS::Cluster", {
        "ClusterSettings": [{"Name": "containerInsights", "Value": "enabled"}],
    })


def test_fargate_service_in_private_subnets_without_public_ip(template):
    template.has_resource_properties("AWS::ECS::Service", {
        "LaunchType": "FARGATE",
        "DesiredCount": 2,
        "NetworkConfiguration": {
            "AwsvpcConfiguration": {
                "AssignPublicIp": "DISABLED",
                "SecurityGroups": [assertions.Match.any_value()],
                "Subnets": assertions.Match.any_value(),
            },
        },
    })

    service = next(iter(template.find_resources("AWS::ECS::Service").values()))
    network = service["Properties"]["NetworkConfiguration"]["AwsvpcConfiguration"]
    assert "EcsSg" in json.dumps(network["SecurityGroups"])
    assert "PrivateSubnet" in json.dumps(network["Subnets"])
    assert "PublicSubnet" not in json.dumps(network["Subnets"])


def test_task_definition(template):
    template.has_resource_properties("AWS::ECS::TaskDefinition", {
        "Cpu": "256",
        "Memory": "512",
        "NetworkMode": "awsvpc",
        "RequiresCompatibilities": ["FARGATE"],
        "ContainerDefinitions": [assertions.Match.object_like({
            "Image": "nginx:latest",
            "PortMappings": [assertions.Match.object_like({"ContainerPort": 80})],
            "LogConfiguration": assertions.Match.object_like({"LogDriver": "awslogs"}),
        })],
    })


def test_task_and_execution_roles_come_from_security_stack(template):
    task_definition = next(iter(template.find_resources("AWS::ECS::TaskDefinition").values()))
    properties = task_definition["Properties"]

    assert properties["TaskRoleArn"] != properties["ExecutionRoleArn"]
    assert "EcsTaskRole" in json.dumps(properties["TaskRoleArn"])
    assert "EcsExecutionRole" in json.dumps(properties["ExecutionRoleArn"])
    template.resource_count_is("AWS::IAM::Role", 0)
    template.resource_count_is("AWS::IAM::Policy", 0)


def test_log_group_retention(template):
    template.has_resource("AWS::Logs::LogGroup", {
        "Properties": {"RetentionInDays": 7},
        "DeletionPolicy": "Delete",
    })


def test_internet_facing_load_balancer_in_public_subnets(template):
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::LoadBalancer", {
        "Scheme": "internet-facing",
        "Type": "application",
    })

    balancer = next(iter(template.find_resources("AWS::ElasticLoadBalancingV2::LoadBalancer").values()))
    assert "PublicSubnet" in json.dumps(balancer["Properties"]["Subnets"])
    assert "AlbSg" in json.dumps(balancer["Properties"]["SecurityGroups"])


def test_listener_default_is_not_found(template):
    template.resource_count_is("AWS::ElasticLoadBalancingV2::Listener", 1)
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::Listener", {
        "Port": 80,
        "Protocol": "HTTP",
        "DefaultActions": [{
            "Type": "fixed-response",
            "FixedResponseConfig": {
                "StatusCode": "404",
                "ContentType": "text/plain",
                "MessageBody": "Not found",
            },
        }],
    })


def test_target_group_is_reached_through_path_rule(graph, template):
    target_group_arn = graph.service.resolve(graph.service.target_group.target_group_arn)

    template.has_resource_properties("AWS::ElasticLoadBalancingV2::ListenerRule", {
        "Priority": 10,
        "Conditions": [{"Field": "path-pattern", "PathPatternConfig": {"Values": ["/*"]}}],
        "Actions": [{"Type": "forward", "TargetGroupArn": target_group_arn}],
    })


def test_target_group_health_check(template):
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::TargetGroup", {
        "Port": 80,
        "Protocol": "HTTP",
        "TargetType": "ip",
        "HealthCheckPath": "/healthcheck",
        "HealthCheckIntervalSeconds": 30,
        "HealthCheckTimeoutSeconds": 5,
        "Matcher": {"HttpCode": "200"},
    })


def test_scalable_target_bounds(template):
    template.has_resource_properties("AWS::ApplicationAutoScaling::ScalableTarget", {
        "MinCapacity": 2,
        "MaxCapacity": 6,
        "ScalableDimension": "ecs:service:DesiredCount",
        "ServiceNamespace": "ecs",
    })


def test_cpu_target_tracking(template):
    template.has_resource_properties("AWS::ApplicationAutoScaling::ScalingPolicy", {
        "PolicyType": "TargetTrackingScaling",
        "TargetTrackingScalingPolicyConfiguration": {
            "PredefinedMetricSpecification": {"PredefinedMetricType": "ECSServiceAverageCPUUtilization"},
            "TargetValue": 70,
            "ScaleInCooldown": 60,
            "ScaleOutCooldown": 60,
        },
    })


def test_pending_tasks_step_scaling(template):
    template.has_resource_properties("AWS::ApplicationAutoScaling::ScalingPolicy", {
        "PolicyType": "StepScaling",
        "StepScalingPolicyConfiguration": assertions.Match.object_like({
            "AdjustmentType": "ChangeInCapacity",
            "StepAdjustments": assertions.Match.array_with([
                assertions.Match.object_like({"ScalingAdjustment": 1}),
            ]),
        }),
    })
    template.has_resource_properties("AWS::CloudWatch::Alarm", {
        "Namespace": "ECS/ContainerInsights",
        "MetricName": "PendingTaskCount",
        "ComparisonOperator": "GreaterThanOrEqualToThreshold",
        "Threshold": 1,
    })


def test_backlog_scaling_can_be_disabled(graph, settings):
    service = build_service(graph, settings, scaling=replace(settings.scaling, backlog_scaling=False))
    template = assertions.Template.from_stack(service)

    template.resource_count_is("AWS::ApplicationAutoScaling::ScalingPolicy", 1)
    template.resource_count_is("AWS::CloudWatch::Alarm", 0)


def test_service_deploys_after_network_and_security(graph):
    assembly = graph.service.node.scope.synth()
    artifact = assembly.get_stack_artifact(graph.service.artifact_id)

    assert {"NetworkStack", "SecurityStack"} <= {d.id for d in artifact.dependencies}


def test_outputs(template):
    assert template.find_outputs("LoadBalancerDns")


def test_inconsistent_capacity_fails_before_any_resource(graph, settings):
    app = graph.network.node.scope

    with pytest.raises(ConfigurationError, match="capacity must satisfy"):
        build_service(graph, settings, scaling=ScalingSettings(min_capacity=3))
    assert app.node.try_find_child("ExtraService") is None


def test_missing_roles_fail_fast(graph, settings):
    with pytest.raises(MissingDependencyError, match="ServiceStack: missing dependency 'execution_role'"):
        build_service(graph, settings, execution_role=None)
