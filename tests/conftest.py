import itertools
import threading

import pytest

from reconcile import ProviderError

SETTINGS = {
    "region": "us-east-1",
    "server_port": 8080,
    "instance_type": "t2.micro",
    "min_size": 2,
    "max_size": 10,
    "cluster_name": "pulumi-asg-example",
}

ID_PREFIXES = {
    "aws_security_group": "sg",
    "aws_launch_configuration": "lc",
    "aws_autoscaling_group": "asg",
}


def mentions(value, resource_id):
    if value == resource_id:
        return True
    if isinstance(value, dict):
        return any(mentions(item, resource_id) for item in value.values())
    if isinstance(value, list):
        return any(mentions(item, resource_id) for item in value)
    return False


class FakeCloud:
    """In-memory provider that, like AWS, refuses to delete a resource in use."""

    def __init__(self):
        self.resources = {}
        self.calls = []
        self.failures = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.barriers = {}

    def fail(self, method, type, *errors):
        self.failures.setdefault((method, type), []).extend(errors)

    def rendezvous(self, method, type, parties, timeout=5):
        """Hold `parties` calls of `method` on `type` until all of them have arrived."""
        self.barriers[method, type] = threading.Barrier(parties, timeout=timeout)

    def _record(self, method, type, resource_id=None):
        with self._lock:
            self.calls.append((method, type, resource_id))
            queue = self.failures.get((method, type))
            error = queue.pop(0) if queue else None
        if error is not None:
            raise error

    @property
    def mutations(self):
        return [call for call in self.calls if call[0] != "read"]

    def index(self, method, type, resource_id=None):
        for position, call in enumerate(self.calls):
            if call[:2] == (method, type) and (resource_id is None or call[2] == resource_id):
                return position
        raise ValueError(f"no {method} call for {type} {resource_id or ''}")

    def live(self, type):
        return sorted(rid for rid, (rtype, _) in self.resources.items() if rtype == type)

    def read(self, type, attributes):
        self._record("read", type)
        if type == "aws_availability_zones":
            return {"id": "us-east-1", "names": ["us-east-1a", "us-east-1b"]}
        if type == "aws_ami":
            return {"id": "ami-0abcdef1234567890"}
        raise ProviderError(f"unknown data source {type}")

    def create(self, type, attributes):
        self._record("create", type)
        barrier = self.barriers.get(("create", type))
        if barrier is not None:
            barrier.wait()
        with self._lock:
            if type == "aws_elb":
                resource_id = attributes["name"]
            else:
                resource_id = f"{ID_PREFIXES.get(type, 'res')}-{next(self._ids):04d}"
            outputs = dict(attributes, id=resource_id)
            if type == "aws_launch_configuration":
                outputs["name"] = resource_id
            if type == "aws_elb":
                outputs["dns_name"] = f"{resource_id}-1234567890.us-east-1.elb.amazonaws.com"
            self.resources[resource_id] = (type, outputs)
        return outputs

    def update(self, type, id, attributes):
        self._record("update", type, id)
        with self._lock:
            if id not in self.resources:
                raise ProviderError(f"{id} not found")
            outputs = dict(self.resources[id][1], **attributes)
            self.resources[id] = (type, outputs)
        return outputs

    def delete(self, type, id):
        self._record("delete", type, id)
        with self._lock:
            if id not in self.resources:
                raise ProviderError(f"{id} not found")
            users = sorted(
                rid for rid, (_, outputs) in self.resources.items()
                if rid != id and mentions(outputs, id)
            )
            if users:
                raise ProviderError(f"ResourceInUse: {id} is in use by {', '.join(users)}")
            del self.resources[id]


@pytest.fixture
def settings():
    return dict(SETTINGS)


@pytest.fixture
def cloud():
    return FakeCloud()
