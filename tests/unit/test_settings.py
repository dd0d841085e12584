from dataclasses import replace

import aws_cdk as cdk
import pytest
from aws_cdk import RemovalPolicy

from deployment.errors import ConfigurationError
from deployment.settings import (
    RemovalMode,
    build_settings,
    load_settings,
)


def test_sandbox_defaults():
    settings = build_settings()

    assert settings.profile == "sandbox"
    assert settings.region == "ap-northeast-1"
    assert settings.network.plan().availability_zones == ["ap-northeast-1a", "ap-northeast-1c"]
    assert settings.database.removal is RemovalMode.DESTROY
    assert settings.database.deletion_protection is False
    assert settings.security.reuse_task_role_for_execution is False
    assert settings.service.desired_count == 2
    assert (settings.scaling.min_capacity, settings.scaling.max_capacity) == (2, 6)


def test_production_profile_protects_data():
    settings = build_settings(profile="production")

    assert settings.database.removal is RemovalMode.SNAPSHOT
    assert settings.database.deletion_protection is True
    assert settings.service.log_removal is RemovalMode.RETAIN


def test_unknown_profile():
    with pytest.raises(ConfigurationError, match="Unknown profile 'staging'"):
        build_settings(profile="staging")


def test_removal_modes_map_to_cdk_policies():
    assert RemovalMode.DESTROY.removal_policy == RemovalPolicy.DESTROY
    assert RemovalMode.SNAPSHOT.removal_policy == RemovalPolicy.SNAPSHOT
    assert RemovalMode.RETAIN.removal_policy == RemovalPolicy.RETAIN
    assert RemovalMode.DESTROY.is_destructive
    assert not RemovalMode.SNAPSHOT.is_destructive


def test_container_port_must_match_compute_tier():
    settings = build_settings()
    mismatched = replace(settings, service=replace(settings.service, container_port=8080))

    with pytest.raises(ConfigurationError, match="container port 8080"):
        mismatched.validate()


def test_listener_port_must_match_edge_tier():
    settings = build_settings()
    mismatched = replace(settings, service=replace(settings.service, listener_port=8080))

    with pytest.raises(ConfigurationError, match="listener port 8080"):
        mismatched.validate()


def test_free_storage_fraction_range():
    settings = build_settings()
    invalid = replace(settings, monitoring=replace(settings.monitoring, free_storage_fraction=1.5))

    with pytest.raises(ConfigurationError, match="free storage fraction"):
        invalid.validate()


def test_load_settings_from_context():
    app = cdk.App(context={
        "profile": "production",
        "region": "us-west-2",
        "availability_zones": "us-west-2a,us-west-2b",
        "app_bucket_name": "app-assets",
        "alarm_email": "ops@example.com",
        "container_image": "public.ecr.aws/nginx/nginx:latest",
        "reuse_task_role_for_execution": "true",
    })

    settings = load_settings(app)

    assert settings.profile == "production"
    assert settings.region == "us-west-2"
    assert [s.availability_zone for s in settings.network.plan().public] == ["us-west-2a", "us-west-2b"]
    assert settings.security.app_bucket_name == "app-assets"
    assert settings.security.reuse_task_role_for_execution is True
    assert settings.monitoring.alarm_email == "ops@example.com"
    assert settings.service.container_image == "public.ecr.aws/nginx/nginx:latest"


def test_load_settings_defaults(monkeypatch):
    monkeypatch.delenv("CDK_DEFAULT_REGION", raising=False)
    monkeypatch.delenv("CDK_DEFAULT_ACCOUNT", raising=False)

    settings = load_settings(cdk.App())

    assert settings.profile == "sandbox"
    assert settings.region == "ap-northeast-1"
    assert settings.account is None
    assert settings.security.reuse_task_role_for_execution is False
