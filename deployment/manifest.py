"""
Read the deployed graph's outputs back from CloudFormation.

After ``cdk deploy --all`` each stack publishes its handles as stack outputs.
``fetch_manifest`` collects them into a single record, e.g. for handing the
database endpoint and secret ARN to an application pipeline:

    session = boto3.Session(region_name="ap-northeast-1")
    manifest = fetch_manifest(session.client("cloudformation"))
    print(manifest.db_endpoint)
"""
import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Tuple

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_STACK_NAMES = {
    "network": "NetworkStack",
    "security": "SecurityStack",
    "database": "DatabaseStack",
    "service": "ServiceStack",
    "monitoring": "MonitoringStack",
}


class ManifestError(Exception):
    """A stack or one of its outputs is missing."""


@dataclass(frozen=True)
class DeploymentManifest:
    vpc_id: str
    public_subnet_ids: Tuple[str, ...]
    private_subnet_ids: Tuple[str, ...]
    task_role_arn: str
    db_endpoint: str
    db_secret_arn: str
    alarm_topic_arn: str
    load_balancer_dns: str


def fetch_manifest(cloudformation, stack_names: Mapping[str, str] = None) -> DeploymentManifest:
    """
    Build the manifest from stack outputs.

    Args:
        cloudformation: A boto3 CloudFormation client
        stack_names: Component -> stack name, defaults to the names app.py uses

    Returns:
        DeploymentManifest: Identifiers of the deployed graph

    Raises:
        ManifestError: If a stack does not exist or lacks an expected output
    """
    names = dict(DEFAULT_STACK_NAMES, **(stack_names or {}))

    network = _stack_outputs(cloudformation, names["network"])
    security = _stack_outputs(cloudformation, names["security"])
    database = _stack_outputs(cloudformation, names["database"])
    service = _stack_outputs(cloudformation, names["service"])
    monitoring = _stack_outputs(cloudformation, names["monitoring"])

    return DeploymentManifest(
        vpc_id=_require(network, "VpcId", names["network"]),
        public_subnet_ids=_split(_require(network, "PublicSubnets", names["network"])),
        private_subnet_ids=_split(_require(network, "PrivateSubnets", names["network"])),
        task_role_arn=_require(security, "EcsTaskRoleArn", names["security"]),
        db_endpoint=_require(database, "RdsEndpoint", names["database"]),
        db_secret_arn=_require(database, "RdsSecretArn", names["database"]),
        alarm_topic_arn=_require(monitoring, "AlarmTopicArn", names["monitoring"]),
        load_balancer_dns=_require(service, "LoadBalancerDns", names["service"]),
    )


def _stack_outputs(cloudformation, stack_name: str) -> Dict[str, str]:
    try:
        response = cloudformation.describe_stacks(StackName=stack_name)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ValidationError":
            raise ManifestError(f"Stack {stack_name} is not deployed") from e
        raise

    stacks = response.get("Stacks", [])
    if not stacks:
        raise ManifestError(f"Stack {stack_name} is not deployed")

    outputs = {o["OutputKey"]: o["OutputValue"] for o in stacks[0].get("Outputs", [])}
    logger.debug("Read %d outputs from %s", len(outputs), stack_name)
    return outputs


def _require(outputs: Mapping[str, str], key: str, stack_name: str) -> str:
    if key not in outputs:
        raise ManifestError(f"Stack {stack_name} has no output '{key}'")
    return outputs[key]


def _split(value: str) -> Tuple[str, ...]:
    return tuple(part for part in value.split(",") if part)
