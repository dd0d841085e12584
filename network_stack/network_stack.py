import logging

from aws_cdk import (
    Stack,
    aws_ec2 as ec2,
    Annotations,
    CfnOutput,
)
from constructs import Construct, DependencyGroup

from deployment.network_plan import DEFAULT_ROUTE, INTERNET_GATEWAY, SubnetTier
from deployment.settings import NetworkSettings

logger = logging.getLogger(__name__)


class NetworkStack(Stack):
    """
    AWS CDK Stack for the VPC every other stack is placed in.

    Subnets are carved out explicitly from a validated ``SubnetPlan`` instead
    of being auto-allocated, and each subnet's tier (public or private) is
    fixed in the plan before anything is declared.

    Architecture:
    - VPC 10.0.0.0/16 with DNS support and hostnames
    - One public and one private /20 subnet per availability zone (2 AZs)
    - Internet gateway; public route table sends 0.0.0.0/0 to it
    - Private route table has no default route (zero NAT gateways)
    - S3 gateway endpoint on the private route table only

    Exposes:
    - vpc: IVpc view of the network with public/isolated subnet groups
    - public_subnets / private_subnets: subnet handles ordered by AZ
    - internet_connectivity: dependable for gateway attachment + default route
    """

    def __init__(self, scope: Construct, construct_id: str, *, settings: NetworkSettings, **kwargs) -> None:
        """
        Initialize the network stack.

        Args:
            scope: The parent construct (usually the app)
            construct_id: The unique identifier for this stack
            settings: VPC block and subnet layout
            **kwargs: Additional arguments passed to the Stack base class
        """
        super().__init__(scope, construct_id, **kwargs)

        self.plan = settings.plan()
        plan = self.plan

        # ----------------------------------------------------------------------
        # VPC and Subnets
        # ----------------------------------------------------------------------
        cfn_vpc = ec2.CfnVPC(
            self, "Vpc",
            cidr_block=plan.vpc_cidr,
            enable_dns_support=True,
            enable_dns_hostnames=True,
        )

        self.cfn_subnets = {}
        for spec in plan.subnets:
            self.cfn_subnets[spec.name] = ec2.CfnSubnet(
                self, spec.name,
                vpc_id=cfn_vpc.ref,
                availability_zone=spec.availability_zone,
                cidr_block=spec.cidr,
                map_public_ip_on_launch=spec.is_public,  # Only public subnets hand out public IPs
            )

        # ----------------------------------------------------------------------
        # Internet Gateway
        # ----------------------------------------------------------------------
        igw = ec2.CfnInternetGateway(self, "InternetGateway")
        igw_attachment = ec2.CfnVPCGatewayAttachment(
            self, "VpcIgwAttach",
            vpc_id=cfn_vpc.ref,
            internet_gateway_id=igw.ref,
        )
        route_targets = {INTERNET_GATEWAY: igw.ref}

        # ----------------------------------------------------------------------
        # Route Tables (one per tier)
        # ----------------------------------------------------------------------
        self.route_tables = {}
        routes = []
        for tier in SubnetTier:
            prefix = tier.value.title()
            route_table = ec2.CfnRouteTable(self, f"{prefix}RouteTable", vpc_id=cfn_vpc.ref)
            self.route_tables[tier] = route_table

            for index, route in enumerate(plan.routes_for(tier)):
                route_id = f"{prefix}DefaultRoute" if route.destination == DEFAULT_ROUTE else f"{prefix}Route{index}"
                cfn_route = ec2.CfnRoute(
                    self, route_id,
                    route_table_id=route_table.ref,
                    destination_cidr_block=route.destination,
                    gateway_id=route_targets[route.target],
                )
                cfn_route.node.add_dependency(igw_attachment)  # IGW must be attached before routing to it
                routes.append(cfn_route)

        for spec in plan.subnets:
            ec2.CfnSubnetRouteTableAssociation(
                self, f"{spec.name}RouteTableAssociation",
                subnet_id=self.cfn_subnets[spec.name].ref,
                route_table_id=self.route_tables[spec.tier].ref,
            )

        self.internet_connectivity = DependencyGroup(igw_attachment, *routes)

        # ----------------------------------------------------------------------
        # VPC handle for dependent stacks
        # ----------------------------------------------------------------------
        public_ids = [self.cfn_subnets[s.name].ref for s in plan.public]
        private_ids = [self.cfn_subnets[s.name].ref for s in plan.private]

        self.vpc = ec2.Vpc.from_vpc_attributes(
            self, "Network",
            vpc_id=cfn_vpc.ref,
            vpc_cidr_block=plan.vpc_cidr,
            availability_zones=plan.availability_zones,
            public_subnet_ids=public_ids,
            public_subnet_route_table_ids=[self.route_tables[SubnetTier.PUBLIC].ref] * len(public_ids),
            isolated_subnet_ids=private_ids,
            isolated_subnet_route_table_ids=[self.route_tables[SubnetTier.PRIVATE].ref] * len(private_ids),
        )
        # Private subnets are registered as isolated: they have no NAT route.
        # Classification comes from the plan; the subnet lists are never
        # appended to after this point.
        self.public_subnets = tuple(self.vpc.public_subnets)
        self.private_subnets = tuple(self.vpc.isolated_subnets)

        # ----------------------------------------------------------------------
        # S3 Gateway Endpoint (private subnets only)
        # ----------------------------------------------------------------------
        self.s3_endpoint = self.vpc.add_gateway_endpoint(
            "S3Endpoint",
            service=ec2.GatewayVpcEndpointAwsService.S3,
            subnets=[ec2.SubnetSelection(subnets=list(self.private_subnets))],
        )

        Annotations.of(self).add_warning_v2(
            "ecs-rds-platform:noNatGateway",
            "No NAT gateway is provisioned: private subnets have no outbound internet "
            "route and reach only S3 through the gateway endpoint. Container images "
            "must be pullable without internet egress for tasks to start.",
        )
        logger.info(
            "Network %s: %d public, %d private subnets in %s, 0 NAT gateways",
            plan.vpc_cidr, len(public_ids), len(private_ids), plan.availability_zones,
        )

        # ----------------------------------------------------------------------
        # Stack Outputs
        # ----------------------------------------------------------------------
        CfnOutput(self, "VpcId", value=self.vpc.vpc_id)
        CfnOutput(self, "PublicSubnets", value=",".join(s.subnet_id for s in self.public_subnets))
        CfnOutput(self, "PrivateSubnets", value=",".join(s.subnet_id for s in self.private_subnets))
