"""Evaluation of network policies into the controller's internal representation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from kuberouter.netpol.resources import (
    LabelSelector,
    Namespace,
    NetworkPolicy,
    NetworkPolicyPeer,
    NetworkPolicyPort,
    Pod,
    PolicyType,
    is_netpol_actionable,
)

KUBE_INGRESS_POLICY_TYPE = "ingress"
KUBE_EGRESS_POLICY_TYPE = "egress"
KUBE_BOTH_POLICY_TYPE = "both"

OPTION_TIMEOUT = "timeout"
OPTION_NO_MATCH = "nomatch"


@dataclass
class ProtocolAndPort:
    protocol: str = ""
    port: str = ""
    endport: str = ""


@dataclass
class EndPoints(ProtocolAndPort):
    """A resolved named port together with the IPs of the pods exposing it."""

    ips: list[str] = field(default_factory=list)


# named port -> protocol -> numeric port -> endpoints
NamedPortMap = dict[str, dict[str, dict[str, EndPoints]]]


@dataclass
class PodInfo:
    ip: str
    name: str
    namespace: str
    labels: Optional[dict[str, str]] = None

    @classmethod
    def from_pod(cls, pod: Pod) -> "PodInfo":
        return cls(ip=pod.pod_ip, name=pod.name, namespace=pod.namespace, labels=pod.labels)


@dataclass
class IngressRule:
    match_all_ports: bool = False
    ports: list[ProtocolAndPort] = field(default_factory=list)
    named_ports: list[EndPoints] = field(default_factory=list)
    match_all_source: bool = False
    src_pods: list[PodInfo] = field(default_factory=list)
    src_ip_blocks: list[list[str]] = field(default_factory=list)


@dataclass
class EgressRule:
    match_all_ports: bool = False
    ports: list[ProtocolAndPort] = field(default_factory=list)
    named_ports: list[EndPoints] = field(default_factory=list)
    match_all_destinations: bool = False
    dst_pods: list[PodInfo] = field(default_factory=list)
    dst_ip_blocks: list[list[str]] = field(default_factory=list)


@dataclass
class NetworkPolicyInfo:
    """A network policy resolved against the current pods and namespaces.

    ``ingress_rules``/``egress_rules`` are None when the policy leaves the field out.
    """

    name: str
    namespace: str
    pod_selector: LabelSelector = field(default_factory=LabelSelector)
    target_pods: dict[str, PodInfo] = field(default_factory=dict)
    ingress_rules: Optional[list[IngressRule]] = None
    egress_rules: Optional[list[EgressRule]] = None
    policy_type: str = KUBE_INGRESS_POLICY_TYPE


def list_pods_by_namespace_and_labels(
    pods: Iterable[Pod], namespace: str, selector: Optional[LabelSelector]
) -> list[Pod]:
    """Pods in namespace whose labels match selector; None selects every pod."""
    return [
        pod
        for pod in pods
        if pod.namespace == namespace and (selector is None or selector.matches(pod.labels))
    ]


def list_namespaces_by_labels(
    namespaces: Iterable[Namespace], selector: Optional[LabelSelector]
) -> list[Namespace]:
    """Namespaces whose labels match selector; None selects every namespace."""
    return [ns for ns in namespaces if selector is None or selector.matches(ns.labels)]


def eval_pod_peer(
    pods: Iterable[Pod],
    namespaces: Iterable[Namespace],
    policy: NetworkPolicy,
    peer: NetworkPolicyPeer,
) -> list[Pod]:
    """Pods selected by a peer's namespace and/or pod selector."""
    if peer.namespace_selector is not None:
        pods = list(pods)
        matching: list[Pod] = []
        try:
            for namespace in list_namespaces_by_labels(namespaces, peer.namespace_selector):
                matching.extend(
                    list_pods_by_namespace_and_labels(pods, namespace.name, peer.pod_selector)
                )
        except ValueError as err:
            raise ValueError(f"Failed to build network policies info due to {err}") from err
        return matching
    if peer.pod_selector is not None:
        return list_pods_by_namespace_and_labels(pods, policy.namespace, peer.pod_selector)
    return []


def eval_ipblock_peer(peer: NetworkPolicyPeer) -> list[list[str]]:
    """Ipset entries for a peer that is only an IP block; /0 ranges are split in two halves."""
    entries: list[list[str]] = []
    if peer.pod_selector is not None or peer.namespace_selector is not None or peer.ip_block is None:
        return entries
    cidr = peer.ip_block.cidr
    if cidr.endswith("/0"):
        entries.append(["0.0.0.0/1", OPTION_TIMEOUT, "0"])
        entries.append(["128.0.0.0/1", OPTION_TIMEOUT, "0"])
    else:
        entries.append([cidr, OPTION_TIMEOUT, "0"])
    for excluded in peer.ip_block.except_:
        if excluded.endswith("/0"):
            entries.append(["0.0.0.0/1", OPTION_TIMEOUT, "0", OPTION_NO_MATCH])
            entries.append(["128.0.0.0/1", OPTION_TIMEOUT, "0", OPTION_NO_MATCH])
        else:
            entries.append([excluded, OPTION_TIMEOUT, "0", OPTION_NO_MATCH])
    return entries


def grab_named_port_from_pod(pod: Optional[Pod], named_port_map: Optional[NamedPortMap]) -> None:
    """Record every container port of pod into named_port_map."""
    if pod is None or named_port_map is None:
        return
    for container in pod.containers:
        for port in container.ports:
            protocol = str(port.protocol)
            container_port = str(port.container_port)
            by_number = named_port_map.setdefault(port.name, {}).setdefault(protocol, {})
            eps = by_number.get(container_port)
            if eps is None:
                by_number[container_port] = EndPoints(
                    protocol=protocol, port=container_port, ips=[pod.pod_ip]
                )
            else:
                eps.ips.append(pod.pod_ip)


def process_network_policy_ports(
    np_ports: Iterable[NetworkPolicyPort], named_port_map: NamedPortMap
) -> tuple[list[ProtocolAndPort], list[EndPoints]]:
    """Split policy ports into numeric ports and resolved named-port endpoints."""
    numeric_ports: list[ProtocolAndPort] = []
    named_ports: list[EndPoints] = []
    for np_port in np_ports:
        protocol = str(np_port.protocol) if np_port.protocol is not None else ""
        if np_port.port is None:
            numeric_ports.append(ProtocolAndPort(protocol=protocol))
        elif isinstance(np_port.port, int):
            endport = ""
            if np_port.end_port is not None and np_port.end_port >= np_port.port:
                endport = str(np_port.end_port)
            numeric_ports.append(
                ProtocolAndPort(protocol=protocol, port=str(np_port.port), endport=endport)
            )
        else:
            for eps in named_port_map.get(np_port.port, {}).get(protocol, {}).values():
                named_ports.append(
                    EndPoints(
                        protocol=eps.protocol, port=eps.port, endport=eps.endport, ips=list(eps.ips)
                    )
                )
    return numeric_ports, named_ports


def policy_rule_ports_has_named_port(np_ports: Iterable[NetworkPolicyPort]) -> bool:
    """True when any port in the list is given by name."""
    return any(isinstance(p.port, str) for p in np_ports)


def _peer_pods(pods, namespaces, policy, peer) -> list[Pod]:
    try:
        return [p for p in eval_pod_peer(pods, namespaces, policy, peer) if is_netpol_actionable(p)]
    except ValueError:
        return []


def _policy_type(policy: NetworkPolicy) -> str:
    ingress = PolicyType.INGRESS in policy.policy_types
    egress = PolicyType.EGRESS in policy.policy_types
    if ingress and egress:
        return KUBE_BOTH_POLICY_TYPE
    if egress:
        return KUBE_EGRESS_POLICY_TYPE
    return KUBE_INGRESS_POLICY_TYPE


def _build_ingress_rule(pods, namespaces, policy, spec, named_ports: NamedPortMap) -> IngressRule:
    rule = IngressRule(match_all_source=not spec.from_)
    for peer in spec.from_:
        rule.src_pods.extend(PodInfo.from_pod(p) for p in _peer_pods(pods, namespaces, policy, peer))
        rule.src_ip_blocks.extend(eval_ipblock_peer(peer))
    if not spec.ports:
        rule.match_all_ports = True
    else:
        rule.ports, rule.named_ports = process_network_policy_ports(spec.ports, named_ports)
    return rule


def _build_egress_rule(pods, namespaces, policy, spec) -> EgressRule:
    rule = EgressRule(match_all_destinations=not spec.to)
    named_ports: NamedPortMap = {}
    if not spec.to:
        # Named destination ports with no peers resolve against every pod in the policy's namespace.
        if policy_rule_ports_has_named_port(spec.ports):
            for peer_pod in list_pods_by_namespace_and_labels(pods, policy.namespace, None):
                if is_netpol_actionable(peer_pod):
                    grab_named_port_from_pod(peer_pod, named_ports)
    else:
        for peer in spec.to:
            for peer_pod in _peer_pods(pods, namespaces, policy, peer):
                rule.dst_pods.append(PodInfo.from_pod(peer_pod))
                grab_named_port_from_pod(peer_pod, named_ports)
            rule.dst_ip_blocks.extend(eval_ipblock_peer(peer))
    if not spec.ports:
        rule.match_all_ports = True
    else:
        rule.ports, rule.named_ports = process_network_policy_ports(spec.ports, named_ports)
    return rule


def build_network_policies_info(
    pods: Iterable[Pod], namespaces: Iterable[Namespace], policies: Iterable[NetworkPolicy]
) -> list[NetworkPolicyInfo]:
    """Resolve every policy against the given pods and namespaces."""
    pods = list(pods)
    namespaces = list(namespaces)
    result: list[NetworkPolicyInfo] = []
    for policy in policies:
        info = NetworkPolicyInfo(
            name=policy.name,
            namespace=policy.namespace,
            pod_selector=policy.pod_selector,
            policy_type=_policy_type(policy),
        )
        try:
            matching = list_pods_by_namespace_and_labels(pods, policy.namespace, policy.pod_selector)
        except ValueError:
            matching = []
        ingress_named_ports: NamedPortMap = {}
        for pod in matching:
            if not is_netpol_actionable(pod):
                continue
            info.target_pods[pod.pod_ip] = PodInfo.from_pod(pod)
            grab_named_port_from_pod(pod, ingress_named_ports)

        if policy.ingress is not None:
            info.ingress_rules = [
                _build_ingress_rule(pods, namespaces, policy, spec, ingress_named_ports)
                for spec in policy.ingress
            ]
        if policy.egress is not None:
            info.egress_rules = [
                _build_egress_rule(pods, namespaces, policy, spec) for spec in policy.egress
            ]
        result.append(info)
    return result