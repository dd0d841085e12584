import json

import aws_cdk as cdk
import aws_cdk.assertions as assertions
import pytest

from database_stack.database_stack import DatabaseStack
from deployment.errors import MissingDependencyError
from deployment.graph import build_graph
from deployment.settings import build_settings


def test_mysql_instance_in_private_subnets(graph):
    template = assertions.Template.from_stack(graph.database)

    template.resource_count_is("AWS::RDS::DBInstance", 1)
    template.has_resource_properties("AWS::RDS::DBInstance", {
        "Engine": "mysql",
        "EngineVersion": "8.0.33",
        "DBInstanceClass": "db.t3.micro",
        "AllocatedStorage": "20",
        "StorageType": "gp3",
        "MultiAZ": True,
        "PubliclyAccessible": False,
        "BackupRetentionPeriod": 7,
        "VPCSecurityGroups": assertions.Match.any_value(),
    })

    subnet_group = next(iter(template.find_resources("AWS::RDS::DBSubnetGroup").values()))
    subnet_ids = json.dumps(subnet_group["Properties"]["SubnetIds"])
    assert "PrivateSubnetA" in subnet_ids
    assert "PrivateSubnetC" in subnet_ids
    assert "Public" not in subnet_ids


def test_instance_bound_only_to_data_security_group(graph):
    template = assertions.Template.from_stack(graph.database)
    instance = next(iter(template.find_resources("AWS::RDS::DBInstance").values()))

    groups = instance["Properties"]["VPCSecurityGroups"]
    assert len(groups) == 1
    assert "RdsSg" in json.dumps(groups)


def test_credentials_come_from_generated_secret(graph):
    template = assertions.Template.from_stack(graph.database)

    template.resource_count_is("AWS::SecretsManager::Secret", 1)
    template.has_resource_properties("AWS::SecretsManager::Secret", {
        "Name": "DatabaseStack-db-credentials",
        "GenerateSecretString": {
            "SecretStringTemplate": '{"username": "dbadmin"}',
            "GenerateStringKey": "password",
            "ExcludePunctuation": True,
            "IncludeSpace": False,
        },
    })
    instance = next(iter(template.find_resources("AWS::RDS::DBInstance").values()))
    assert "MasterUserPassword" in instance["Properties"]
    assert "resolve:secretsmanager" in json.dumps(instance["Properties"]["MasterUserPassword"])


def test_sandbox_removal_is_destructive_and_flagged(graph):
    template = assertions.Template.from_stack(graph.database)

    template.has_resource("AWS::RDS::DBInstance", {
        "DeletionPolicy": "Delete",
        "UpdateReplacePolicy": "Delete",
        "Properties": assertions.Match.object_like({"DeletionProtection": False}),
    })
    assertions.Annotations.from_stack(graph.database).has_warning(
        "*", assertions.Match.string_like_regexp("removal mode is 'destroy'")
    )


def test_production_keeps_a_final_snapshot():
    app = cdk.App()
    graph = build_graph(app, build_settings(profile="production"))
    template = assertions.Template.from_stack(graph.database)

    template.has_resource("AWS::RDS::DBInstance", {
        "DeletionPolicy": "Snapshot",
        "Properties": assertions.Match.object_like({"DeletionProtection": True}),
    })
    template.has_resource("AWS::RDS::DBSubnetGroup", {"DeletionPolicy": "Retain"})
    assertions.Annotations.from_stack(graph.database).has_no_warning(
        "*", assertions.Match.string_like_regexp("removal mode is 'destroy'")
    )


def test_outputs(graph):
    template = assertions.Template.from_stack(graph.database)

    assert template.find_outputs("RdsEndpoint")
    assert template.find_outputs("RdsSecretArn")


def test_missing_security_group_fails_before_any_resource(graph, settings):
    app = cdk.App()

    with pytest.raises(MissingDependencyError, match="DatabaseStack: missing dependency 'data_security_group'"):
        DatabaseStack(
            app, "database",
            network=graph.network,
            data_security_group=None,
            settings=settings.database,
        )
    assert app.node.try_find_child("database") is None
