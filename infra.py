import pulumi
import pulumi_aws as aws
import pulumi_aws_native as aws_native

import variables
import webserver

settings = variables.settings

# Check the dependency graph before anything is registered with the engine;
# a lifecycle conflict fails the update here, naming the offending resources
graph = webserver.build_graph(settings, variables.default_tags)
graph.validate()
pulumi.log.info(f"Deploying {len(graph)} resources to {variables.aws_region}, server port {variables.server_port}")


def attributes(address):
    return graph[address].attributes


def resource_options(address, **kwargs):
    # Resources that are not create_before_destroy are destroyed before their replacement is created
    lifecycle = graph[address].lifecycle
    return pulumi.ResourceOptions(delete_before_replace=not lifecycle.create_before_destroy, **kwargs)


# Convert standard_tags dictionary to the array format used by the Cloud Control provider
def convert_tags_dict_to_array(tags_dict):
    return [{"key": k, "value": v} for k, v in tags_dict.items()]


# Convert classic-provider rules to Cloud Control ingress/egress entries, one per CIDR
def convert_rules(rules):
    return [
        {
            "ip_protocol": rule["protocol"],
            "from_port": rule["from_port"],
            "to_port": rule["to_port"],
            "cidr_ip": cidr,
        }
        for rule in rules
        for cidr in rule["cidr_blocks"]
    ]


shared_credentials_files = [variables.credentials_file] if variables.credentials_file else None

# Configure the AWS providers for the requested region and credentials
provider = aws.Provider("aws",
    region=variables.aws_region,
    profile=variables.profile,
    shared_credentials_files=shared_credentials_files,
    )

native_provider = aws_native.Provider("aws-native",
    region=variables.aws_region,
    profile=variables.profile,
    shared_credentials_file=variables.credentials_file,
    )

# Define standard tags
standard_tags = variables.default_tags


# Availability zones in the region
zones = aws.get_availability_zones(
    state=attributes("data.aws_availability_zones.all")["state"],
    opts=pulumi.InvokeOptions(provider=provider),
    )

# Retrieve the latest Ubuntu 22.04 AMI; the boot script relies on its busybox
ami = aws.ec2.get_ami(
    most_recent=True,
    owners=attributes("data.aws_ami.ubuntu")["owners"],
    filters=attributes("data.aws_ami.ubuntu")["filters"],
    opts=pulumi.InvokeOptions(provider=provider),
    )


# Instance Security Group
security_group_instance = aws.ec2.SecurityGroup("security-group-instance",
    description="Allow HTTP to the web servers",
    ingress=attributes("aws_security_group.instance")["ingress"],
    opts=resource_options("aws_security_group.instance", provider=provider),
    tags=standard_tags
    )


# Launch Configuration
launch_configuration = aws.ec2.LaunchConfiguration("launch-configuration",
    image_id=ami.id,
    instance_type=variables.instance_type,
    security_groups=[security_group_instance.id],
    user_data=attributes("aws_launch_configuration.example")["user_data"],
    opts=resource_options("aws_launch_configuration.example", provider=provider),
    )


# Load Balancer Security Group
security_group_elb = aws_native.ec2.SecurityGroup("security-group-elb",
    group_name=attributes("aws_security_group.elb")["name"],
    group_description="Allow HTTP from anywhere; all outbound",
    security_group_ingress=convert_rules(attributes("aws_security_group.elb")["ingress"]),
    security_group_egress=convert_rules(attributes("aws_security_group.elb")["egress"]),
    tags=convert_tags_dict_to_array(standard_tags),
    opts=resource_options("aws_security_group.elb", provider=native_provider),
    )


# Classic Load Balancer
load_balancer = aws.elb.LoadBalancer("load-balancer",
    name=attributes("aws_elb.example")["name"],
    availability_zones=zones.names,
    security_groups=[security_group_elb.group_id],
    listeners=attributes("aws_elb.example")["listeners"],
    health_check=attributes("aws_elb.example")["health_check"],
    opts=resource_options("aws_elb.example", provider=provider),
    tags=standard_tags
    )


# Auto Scaling Group
asg_attributes = attributes("aws_autoscaling_group.example")
asg = aws.autoscaling.Group("asg",
    launch_configuration=launch_configuration.name,
    availability_zones=zones.names,
    load_balancers=[load_balancer.name],
    health_check_type=asg_attributes["health_check_type"],
    min_size=asg_attributes["min_size"],
    max_size=asg_attributes["max_size"],
    tags=asg_attributes["tags"],
    opts=resource_options("aws_autoscaling_group.example", provider=provider),
)
