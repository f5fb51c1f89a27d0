import os

import pulumi

from lifecycle_graph import Variable, resolve_variables

# Input variables. Override with `pulumi config set <name> <value>` or the
# WEBSERVER_<NAME> environment variable; stack config wins.
VARIABLES = [
    Variable("region", "AWS region to deploy into", "us-east-1"),
    Variable("server_port", "The port the server will use for HTTP requests", 8080),
    Variable("instance_type", "EC2 instance type for the cluster members", "t2.micro"),
    Variable("min_size", "Minimum number of instances in the Auto Scaling Group", 2),
    Variable("max_size", "Maximum number of instances in the Auto Scaling Group", 10),
    Variable("cluster_name", "Prefix for resource names", "pulumi-asg-example"),
]


def overrides(config, environ=os.environ):
    values = {}
    for variable in VARIABLES:
        value = config.get(variable.name)
        if value is None:
            value = environ.get(f"WEBSERVER_{variable.name.upper()}")
        values[variable.name] = value
    return values


config = pulumi.Config()
settings = resolve_variables(VARIABLES, overrides(config))

# AWS configuration
aws_region = settings["region"]

# Credentials: a shared credentials file and profile, otherwise the
# AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY environment variables
credentials_file = config.get("credentials_file")
profile = config.get("profile")

# Web server
server_port = settings["server_port"]

# EC2 Configuration
instance_type = settings["instance_type"]

default_tags = {
    "project": "pulumi-aws-asg-webserver",
    "Name": settings["cluster_name"],
}
