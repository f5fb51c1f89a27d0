"""
Desired state of the web server cluster.

The attribute maps built here are shared by the Pulumi program (`infra.py`)
and by `build_graph`, which describes the same resources as a
`ResourceGraph` so the lifecycle rules can be checked before deploying.
"""

from dataclasses import dataclass

from lifecycle_graph import DataSource, Lifecycle, Ref, ResourceGraph, ResourceNode

ANYWHERE = ["0.0.0.0/0"]

# Canonical's account, Ubuntu 22.04 ships busybox
UBUNTU_OWNER = "099720109477"
UBUNTU_IMAGE_NAME = "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"


@dataclass(frozen=True)
class HealthCheck:
    port: int
    path: str = "/"
    healthy_threshold: int = 2
    unhealthy_threshold: int = 2
    timeout: int = 3
    interval: int = 30

    @property
    def target(self):
        return f"HTTP:{self.port}{self.path}"

    def args(self):
        return {
            "healthy_threshold": self.healthy_threshold,
            "unhealthy_threshold": self.unhealthy_threshold,
            "timeout": self.timeout,
            "interval": self.interval,
            "target": self.target,
        }

    def status(self, results, initial=False):
        """Health after a sequence of health check results (True = check passed).

        A member only flips state after `healthy_threshold` consecutive
        passes or `unhealthy_threshold` consecutive failures.
        """
        healthy = initial
        streak = 0
        last = None
        for passed in results:
            streak = streak + 1 if passed == last else 1
            last = passed
            if passed and streak >= self.healthy_threshold:
                healthy = True
            elif not passed and streak >= self.unhealthy_threshold:
                healthy = False
        return healthy


@dataclass(frozen=True)
class ScalingPolicy:
    min_size: int
    max_size: int
    health_check_type: str = "ELB"

    def __post_init__(self):
        if self.min_size < 0 or self.min_size > self.max_size:
            raise ValueError(f"Invalid capacity range: min_size={self.min_size}, max_size={self.max_size}")

    def desired_capacity(self, requested=None):
        if requested is None:
            return self.min_size
        return max(self.min_size, min(self.max_size, requested))

    def replacements_needed(self, healthy, requested=None):
        """Instances to launch after unhealthy members have been terminated."""
        return max(0, self.desired_capacity(requested) - healthy)


def ami_filters():
    return [{"name": "name", "values": [UBUNTU_IMAGE_NAME]}]


def user_data(server_port):
    return (
        "#!/bin/bash\n"
        'echo "Hello, World" > index.html\n'
        f'nohup busybox httpd -f -p "{server_port}" &\n'
    )


def instance_ingress(server_port):
    return [{
        "protocol": "tcp",
        "from_port": server_port,
        "to_port": server_port,
        "cidr_blocks": ANYWHERE,
    }]


def elb_ingress():
    return [{"protocol": "tcp", "from_port": 80, "to_port": 80, "cidr_blocks": ANYWHERE}]


def elb_egress():
    return [{"protocol": "-1", "from_port": 0, "to_port": 0, "cidr_blocks": ANYWHERE}]


def listeners(server_port):
    return [{
        "lb_port": 80,
        "lb_protocol": "http",
        "instance_port": server_port,
        "instance_protocol": "http",
    }]


def asg_tags(tags):
    return [{"key": k, "value": v, "propagate_at_launch": True} for k, v in tags.items()]


def build_graph(settings, tags=None):
    """Describe the cluster as a ResourceGraph.

    `settings` is the resolved variable mapping: region, server_port,
    instance_type, min_size, max_size and cluster_name.
    """
    port = settings["server_port"]
    name = settings["cluster_name"]
    policy = ScalingPolicy(settings["min_size"], settings["max_size"])
    # The launch configuration is create_before_destroy, so everything it references is too.
    replace_first = Lifecycle(create_before_destroy=True, force_new=frozenset({"name"}))

    return ResourceGraph([
        DataSource("aws_availability_zones", "all", {"state": "available"}),
        DataSource("aws_ami", "ubuntu", {
            "most_recent": True,
            "owners": [UBUNTU_OWNER],
            "filters": ami_filters(),
        }),
        ResourceNode("aws_security_group", "instance", {
            "name": f"{name}-instance",
            "ingress": instance_ingress(port),
        }, replace_first),
        ResourceNode("aws_launch_configuration", "example", {
            "image_id": Ref("data.aws_ami.ubuntu"),
            "instance_type": settings["instance_type"],
            "security_groups": [Ref("aws_security_group.instance")],
            "user_data": user_data(port),
        }, Lifecycle.immutable(create_before_destroy=True)),
        ResourceNode("aws_security_group", "elb", {
            "name": f"{name}-elb",
            "ingress": elb_ingress(),
            "egress": elb_egress(),
        }, Lifecycle(force_new=frozenset({"name"}))),
        ResourceNode("aws_elb", "example", {
            "name": name,
            "security_groups": [Ref("aws_security_group.elb")],
            "availability_zones": Ref("data.aws_availability_zones.all", "names"),
            "health_check": HealthCheck(port).args(),
            "listeners": listeners(port),
        }, Lifecycle(force_new=frozenset({"name"}))),
        ResourceNode("aws_autoscaling_group", "example", {
            "launch_configuration": Ref("aws_launch_configuration.example", "name"),
            "availability_zones": Ref("data.aws_availability_zones.all", "names"),
            "load_balancers": [Ref("aws_elb.example", "name")],
            "health_check_type": policy.health_check_type,
            "min_size": policy.min_size,
            "max_size": policy.max_size,
            "tags": asg_tags({**(tags or {}), "Name": f"{name}-asg"}),
        }),
    ])
