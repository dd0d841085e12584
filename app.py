#!/usr/bin/env python3
import logging

import aws_cdk as cdk

from deployment.graph import build_graph
from deployment.settings import load_settings

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

# Initialize the CDK Application
app = cdk.App()
"""
Root construct for the ECS + RDS platform. Settings come from CDK context
(cdk.json, or `cdk synth -c profile=production`).
"""

# ------------------------------------------------------------------------------
# Deployment Settings
# ------------------------------------------------------------------------------
settings = load_settings(app)
"""
Profiles:
- sandbox (default): database and logs are destroyed with the stacks, no
  final snapshot. Synth warns about the destructive database.
- production: final DB snapshot, deletion protection, retained logs.
"""

# ------------------------------------------------------------------------------
# Stacks
# ------------------------------------------------------------------------------
graph = build_graph(app, settings)
"""
Deployment Order:
1. NetworkStack    - VPC, 2 public + 2 private subnets, IGW, S3 endpoint
2. SecurityStack   - ALB -> ECS -> RDS security group chain, task roles
3. DatabaseStack   - MySQL instance + generated secret (private subnets)
4. ServiceStack    - Fargate service, ALB, health check, autoscaling
5. MonitoringStack - 4 alarms -> 1 SNS topic

DatabaseStack and ServiceStack only depend on the first two, so CloudFormation
may deploy them in parallel.
"""

# ------------------------------------------------------------------------------
# Application-wide Tagging
# ------------------------------------------------------------------------------
cdk.Tags.of(app).add("Project", settings.project)
cdk.Tags.of(app).add("Environment", settings.profile)

app.synth()
"""
Writes cdk.out/<Stack>.template.json for all five stacks. Deploy with
`cdk deploy --all`; read the resulting identifiers back with
deployment.manifest.fetch_manifest.
"""
