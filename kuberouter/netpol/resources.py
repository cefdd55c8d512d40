"""Cluster resource models used by the network policy controller."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Union


class PodPhase(str, Enum):
    """Lifecycle phase reported in a pod's status."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"
    COMPLETED = "Completed"


@dataclass
class ContainerPort:
    """A port exposed by a container, optionally named."""

    container_port: int
    name: str = ""
    protocol: str = "TCP"


@dataclass
class Container:
    name: str = ""
    image: str = ""
    ports: list[ContainerPort] = field(default_factory=list)


@dataclass
class Pod:
    name: str
    namespace: str = ""
    labels: Optional[dict[str, str]] = None
    phase: Optional[PodPhase] = None
    pod_ip: str = ""
    pod_ips: list[str] = field(default_factory=list)
    host_ip: str = ""
    host_network: bool = False
    containers: list[Container] = field(default_factory=list)
    termination_grace_period_seconds: Optional[int] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass
class Namespace:
    name: str
    labels: Optional[dict[str, str]] = None

    @property
    def key(self) -> str:
        return self.name


@dataclass
class LabelSelectorRequirement:
    """A single set-based requirement: key, operator (In, NotIn, Exists, DoesNotExist), values."""

    key: str
    operator: str
    values: list[str] = field(default_factory=list)

    def matches(self, labels: dict[str, str]) -> bool:
        present = self.key in labels
        if self.operator == "In":
            if not self.values:
                raise ValueError(f"values must be non-empty for operator In on key {self.key!r}")
            return present and labels[self.key] in self.values
        if self.operator == "NotIn":
            if not self.values:
                raise ValueError(f"values must be non-empty for operator NotIn on key {self.key!r}")
            return not present or labels[self.key] not in self.values
        if self.operator == "Exists":
            return present
        if self.operator == "DoesNotExist":
            return not present
        raise ValueError(f"{self.operator!r} is not a valid label selector operator")


@dataclass
class LabelSelector:
    """Label selector; an empty selector matches every object."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = field(default_factory=list)

    def matches(self, labels: Optional[dict[str, str]]) -> bool:
        labels = labels or {}
        if any(labels.get(k) != v or k not in labels for k, v in self.match_labels.items()):
            return False
        return all(req.matches(labels) for req in self.match_expressions)


@dataclass
class IPBlock:
    cidr: str
    except_: list[str] = field(default_factory=list)


@dataclass
class NetworkPolicyPeer:
    pod_selector: Optional[LabelSelector] = None
    namespace_selector: Optional[LabelSelector] = None
    ip_block: Optional[IPBlock] = None


@dataclass
class NetworkPolicyPort:
    """A port in a policy rule; ``port`` is a number, a port name, or None for all ports."""

    protocol: Optional[str] = None
    port: Union[int, str, None] = None
    end_port: Optional[int] = None


@dataclass
class IngressRuleSpec:
    from_: list[NetworkPolicyPeer] = field(default_factory=list)
    ports: list[NetworkPolicyPort] = field(default_factory=list)


@dataclass
class EgressRuleSpec:
    to: list[NetworkPolicyPeer] = field(default_factory=list)
    ports: list[NetworkPolicyPort] = field(default_factory=list)


class PolicyType(str, Enum):
    INGRESS = "Ingress"
    EGRESS = "Egress"


@dataclass
class NetworkPolicy:
    """A network policy; ``ingress``/``egress`` of None means the field is absent."""

    name: str
    namespace: str
    pod_selector: LabelSelector = field(default_factory=LabelSelector)
    policy_types: list[PolicyType] = field(default_factory=list)
    ingress: Optional[list[IngressRuleSpec]] = None
    egress: Optional[list[EgressRuleSpec]] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


def _object_key(obj) -> str:
    namespace = getattr(obj, "namespace", "")
    return f"{namespace}/{obj.name}" if namespace else obj.name


class ResourceStore:
    """Thread-safe store of resources keyed by ``namespace/name`` (or ``name``)."""

    def __init__(self, objects=()):
        self._lock = threading.Lock()
        self._items: dict[str, object] = {}
        for obj in objects:
            self.add(obj)

    def add(self, obj) -> None:
        """Add or replace an object."""
        with self._lock:
            self._items[_object_key(obj)] = obj

    def remove(self, obj) -> None:
        """Remove an object; raises KeyError if it is not stored."""
        with self._lock:
            del self._items[_object_key(obj)]

    def get(self, key: str):
        """Return the object stored under key, or None."""
        with self._lock:
            return self._items.get(key)

    def list(self) -> list:
        with self._lock:
            return list(self._items.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator:
        return iter(self.list())

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._items


_FINISHED_PHASES = {PodPhase.FAILED, PodPhase.SUCCEEDED, PodPhase.COMPLETED}


def is_finished(pod: Pod) -> bool:
    """True when the pod has failed, succeeded or completed."""
    return pod.phase in _FINISHED_PHASES


def is_netpol_actionable(pod: Pod) -> bool:
    """True when network policy can be applied to the pod."""
    return not is_finished(pod) and pod.pod_ip != "" and not pod.host_network


def is_pod_update_netpol_relevant(old_pod: Pod, new_pod: Pod) -> bool:
    """True when a pod change affects network policy: phase, IPs, host IP or labels."""
    return (
        new_pod.phase != old_pod.phase
        or new_pod.pod_ip != old_pod.pod_ip
        or new_pod.pod_ips != old_pod.pod_ips
        or new_pod.host_ip != old_pod.host_ip
        or new_pod.labels != old_pod.labels
    )


_NODE_PORT_RANGE = re.compile(r"([0-9]+)[:-]([0-9]+)")
_MAX_PORT = 0xFFFF


def validate_node_port_range(node_port_option: str) -> str:
    """Validate a ``start-end`` or ``start:end`` port range and return ``start:end``."""
    match = _NODE_PORT_RANGE.fullmatch(node_port_option)
    if match is None:
        raise ValueError(
            f"failed to parse node port range given: '{node_port_option}' "
            "please see specification in help text"
        )
    port1, port2 = int(match.group(1)), int(match.group(2))
    if port1 > _MAX_PORT:
        raise ValueError(f"could not parse first port number from range given: '{node_port_option}'")
    if port2 > _MAX_PORT:
        raise ValueError(f"could not parse second port number from range given: '{node_port_option}'")
    if port1 >= port2:
        raise ValueError(
            f"port 1 is greater than or equal to port 2 in range given: '{node_port_option}'"
        )
    return f"{port1}:{port2}"