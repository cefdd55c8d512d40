"""Per-pod firewall chain rules written into the filter table text."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Iterable, Union

from kuberouter.netpol.chains import (
    DEFAULT_CHAINS,
    KUBE_DEFAULT_NETPOL_CHAIN,
    KUBE_FORWARD_CHAIN_NAME,
    KUBE_OUTPUT_CHAIN_NAME,
    FilterTable,
    network_policy_chain_name,
    pod_firewall_chain_name,
)
from kuberouter.netpol.policyinfo import (
    KUBE_BOTH_POLICY_TYPE,
    KUBE_EGRESS_POLICY_TYPE,
    KUBE_INGRESS_POLICY_TYPE,
    NetworkPolicyInfo,
    PodInfo,
)
from kuberouter.netpol.resources import Pod, is_netpol_actionable


def _write_rule(filter_table: FilterTable, args: list[str]) -> None:
    filter_table.write(" ".join(args))


def get_local_pods(pods: Iterable[Pod], node_ip: str) -> dict[str, PodInfo]:
    """Actionable pods running on the node with node_ip, keyed by pod IP."""
    return {
        pod.pod_ip: PodInfo.from_pod(pod)
        for pod in pods
        if pod.host_ip == node_ip and is_netpol_actionable(pod)
    }


def setup_pod_netpol_rules(
    filter_table: FilterTable,
    pod: PodInfo,
    pod_fw_chain_name: str,
    policies: Iterable[NetworkPolicyInfo],
    version: str,
) -> None:
    """Insert jumps from the pod's chain to the policy chains that select it."""
    has_ingress = False
    has_egress = False

    for policy in policies:
        if pod.ip not in policy.target_pods:
            continue
        comment = f'"run through nw policy {policy.name}"'
        policy_chain = network_policy_chain_name(policy.namespace, policy.name, version)
        if policy.policy_type == KUBE_BOTH_POLICY_TYPE:
            has_ingress = has_egress = True
            args = ["-I", pod_fw_chain_name, "1", "-m", "comment", "--comment", comment,
                    "-j", policy_chain, "\n"]
        elif policy.policy_type == KUBE_INGRESS_POLICY_TYPE:
            has_ingress = True
            args = ["-I", pod_fw_chain_name, "1", "-d", pod.ip, "-m", "comment", "--comment", comment,
                    "-j", policy_chain, "\n"]
        elif policy.policy_type == KUBE_EGRESS_POLICY_TYPE:
            has_egress = True
            args = ["-I", pod_fw_chain_name, "1", "-s", pod.ip, "-m", "comment", "--comment", comment,
                    "-j", policy_chain, "\n"]
        else:
            args = []
        _write_rule(filter_table, args)

    if not has_ingress:
        comment = '"run through default ingress network policy  chain"'
        _write_rule(filter_table, ["-I", pod_fw_chain_name, "1", "-d", pod.ip, "-m", "comment",
                                   "--comment", comment, "-j", KUBE_DEFAULT_NETPOL_CHAIN, "\n"])

    if not has_egress:
        comment = '"run through default egress network policy  chain"'
        _write_rule(filter_table, ["-I", pod_fw_chain_name, "1", "-s", pod.ip, "-m", "comment",
                                   "--comment", comment, "-j", KUBE_DEFAULT_NETPOL_CHAIN, "\n"])

    comment = "\"rule to permit the traffic to pods when source is the pod's local node\""
    _write_rule(filter_table, ["-I", pod_fw_chain_name, "1", "-m", "comment", "--comment", comment,
                               "-m", "addrtype", "--src-type", "LOCAL", "-d", pod.ip, "-j", "ACCEPT", "\n"])

    # INVALID packets are ignored by NAT, so they must be dropped to avoid leaking past the policy.
    comment = '"rule to drop invalid state for pod"'
    _write_rule(filter_table, ["-I", pod_fw_chain_name, "1", "-m", "comment", "--comment", comment,
                               "-m", "conntrack", "--ctstate", "INVALID", "-j", "DROP", "\n"])

    comment = '"rule for stateful firewall for pod"'
    _write_rule(filter_table, ["-I", pod_fw_chain_name, "1", "-m", "comment", "--comment", comment,
                               "-m", "conntrack", "--ctstate", "RELATED,ESTABLISHED", "-j", "ACCEPT", "\n"])


def intercept_pod_inbound_traffic(filter_table: FilterTable, pod: PodInfo, pod_fw_chain_name: str) -> None:
    """Send routed, locally proxied and bridged traffic destined to the pod through its chain."""
    comment = (
        f'"rule to jump traffic destined to POD name:{pod.name} namespace: {pod.namespace}'
        f' to chain {pod_fw_chain_name}"'
    )
    _write_rule(filter_table, ["-A", KUBE_FORWARD_CHAIN_NAME, "-m", "comment", "--comment", comment,
                               "-d", pod.ip, "-j", pod_fw_chain_name + "\n"])
    _write_rule(filter_table, ["-A", KUBE_OUTPUT_CHAIN_NAME, "-m", "comment", "--comment", comment,
                               "-d", pod.ip, "-j", pod_fw_chain_name + "\n"])
    _write_rule(filter_table, ["-A", KUBE_FORWARD_CHAIN_NAME, "-m", "physdev", "--physdev-is-bridged",
                               "-m", "comment", "--comment", comment, "-d", pod.ip,
                               "-j", pod_fw_chain_name, "\n"])


def intercept_pod_outbound_traffic(filter_table: FilterTable, pod: PodInfo, pod_fw_chain_name: str) -> None:
    """Send traffic originating from the pod through its chain so egress policy applies."""
    comment = (
        f'"rule to jump traffic from POD name:{pod.name} namespace: {pod.namespace}'
        f' to chain {pod_fw_chain_name}"'
    )
    for chain in DEFAULT_CHAINS.values():
        _write_rule(filter_table, ["-A", chain, "-m", "comment", "--comment", comment,
                                   "-s", pod.ip, "-j", pod_fw_chain_name, "\n"])
    _write_rule(filter_table, ["-A", KUBE_FORWARD_CHAIN_NAME, "-m", "physdev", "--physdev-is-bridged",
                               "-m", "comment", "--comment", comment, "-s", pod.ip,
                               "-j", pod_fw_chain_name, "\n"])


def drop_unmarked_traffic_rules(
    filter_table: FilterTable, pod_name: str, pod_namespace: str, pod_fw_chain_name: str
) -> None:
    """Log, reject and unmark traffic no policy accepted; written once per chain."""
    comment = f'"rule to log dropped traffic POD name:{pod_name} namespace: {pod_namespace}"'
    log_rule = " ".join(["-A", pod_fw_chain_name, "-m", "comment", "--comment", comment,
                         "-m", "mark", "!", "--mark", "0x10000/0x10000", "-j", "NFLOG",
                         "--nflog-group", "100", "-m", "limit", "--limit", "10/minute",
                         "--limit-burst", "10", "\n"])
    if filter_table.contains(log_rule):
        return
    filter_table.write(log_rule)

    comment = f'"rule to REJECT traffic destined for POD name:{pod_name} namespace: {pod_namespace}"'
    _write_rule(filter_table, ["-A", pod_fw_chain_name, "-m", "comment", "--comment", comment,
                               "-m", "mark", "!", "--mark", "0x10000/0x10000", "-j", "REJECT", "\n"])

    _write_rule(filter_table, ["-A", pod_fw_chain_name, "-j", "MARK", "--set-mark", "0/0x10000", "\n"])


def sync_pod_firewall_chains(
    filter_table: FilterTable,
    local_pods: Union[Mapping[str, PodInfo], Iterable[PodInfo]],
    policies: Iterable[NetworkPolicyInfo],
    version: str,
) -> set[str]:
    """Write the firewall chain of every local pod and return the chain names."""
    pods = local_pods.values() if isinstance(local_pods, Mapping) else local_pods
    policies = list(policies)
    active_chains: set[str] = set()

    for pod in pods:
        chain = pod_firewall_chain_name(pod.namespace, pod.name, version)
        filter_table.write(f":{chain}\n")
        active_chains.add(chain)

        setup_pod_netpol_rules(filter_table, pod, chain, policies, version)
        intercept_pod_inbound_traffic(filter_table, pod, chain)
        intercept_pod_outbound_traffic(filter_table, pod, chain)
        drop_unmarked_traffic_rules(filter_table, pod.name, pod.namespace, chain)

        comment = '"set mark to ACCEPT traffic that comply to network policies"'
        _write_rule(filter_table, ["-A", chain, "-m", "comment", "--comment", comment,
                                   "-j", "MARK", "--set-mark", "0x20000/0x20000", "\n"])

    return active_chains