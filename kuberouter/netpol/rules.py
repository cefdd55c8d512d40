"""Network policy chain rules and the ipsets they match against."""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from kuberouter.netpol.chains import (
    FilterTable,
    network_policy_chain_name,
    policy_destination_pod_ipset_name,
    policy_indexed_destination_ipblock_ipset_name,
    policy_indexed_destination_pod_ipset_name,
    policy_indexed_egress_named_port_ipset_name,
    policy_indexed_ingress_named_port_ipset_name,
    policy_indexed_source_ipblock_ipset_name,
    policy_indexed_source_pod_ipset_name,
    policy_source_pod_ipset_name,
)
from kuberouter.netpol.policyinfo import (
    KUBE_BOTH_POLICY_TYPE,
    KUBE_EGRESS_POLICY_TYPE,
    KUBE_INGRESS_POLICY_TYPE,
    OPTION_TIMEOUT,
    NetworkPolicyInfo,
    PodInfo,
    ProtocolAndPort,
)

log = logging.getLogger(__name__)

TYPE_HASH_IP = "hash:ip"
TYPE_HASH_NET = "hash:net"

_POLICY_MARK = "0x10000/0x10000"


@dataclass
class IPSet:
    """Desired state of one ipset: its type and entries (address plus options)."""

    name: str
    set_type: str
    entries: list[list[str]] = field(default_factory=list)


class IPSetTable:
    """Desired ipsets keyed by name, to be restored onto the host in one go."""

    def __init__(self, sets: Iterable[IPSet] = ()) -> None:
        self.sets: dict[str, IPSet] = {s.name: s for s in sets}

    def refresh_set(self, name: str, entries: Iterable[Iterable[str]], set_type: str) -> None:
        """Create or replace the set called name with exactly the given entries."""
        self.sets[name] = IPSet(name=name, set_type=set_type, entries=[list(e) for e in entries])

    def __contains__(self, name: str) -> bool:
        return name in self.sets

    def __getitem__(self, name: str) -> IPSet:
        return self.sets[name]

    def __iter__(self) -> Iterator[IPSet]:
        return iter(list(self.sets.values()))

    def __len__(self) -> int:
        return len(self.sets)


def get_ips_from_pods(pods: Iterable[PodInfo]) -> list[str]:
    """The IP of every pod, in order."""
    return [pod.ip for pod in pods]


class PolicyChainBuilder:
    """Writes one chain per network policy into a filter table and fills the ipsets it uses."""

    def __init__(
        self,
        filter_table: Optional[FilterTable] = None,
        ipset_table: Optional[IPSetTable] = None,
        ipset_lock: Optional[threading.Lock] = None,
    ) -> None:
        self.filter_table = filter_table if filter_table is not None else FilterTable()
        self.ipset_table = ipset_table if ipset_table is not None else IPSetTable()
        self.ipset_lock = ipset_lock

    def sync_network_policy_chains(
        self, policies: Iterable[NetworkPolicyInfo], version: str
    ) -> tuple[set[str], set[str]]:
        """Write every policy chain; return the active chain names and active ipset names."""
        start = time.monotonic()
        lock = self.ipset_lock if self.ipset_lock is not None else contextlib.nullcontext()
        active_chains: set[str] = set()
        active_ipsets: set[str] = set()
        with lock:
            for policy in policies:
                chain = network_policy_chain_name(policy.namespace, policy.name, version)
                self.filter_table.write(f":{chain}\n")
                active_chains.add(chain)

                current_pod_ips = list(policy.target_pods)
                if policy.policy_type in (KUBE_BOTH_POLICY_TYPE, KUBE_INGRESS_POLICY_TYPE):
                    dest_set = policy_destination_pod_ipset_name(policy.namespace, policy.name)
                    self.create_generic_hash_ipset(dest_set, TYPE_HASH_IP, current_pod_ips)
                    self.process_ingress_rules(policy, dest_set, active_ipsets, version)
                    active_ipsets.add(dest_set)
                if policy.policy_type in (KUBE_BOTH_POLICY_TYPE, KUBE_EGRESS_POLICY_TYPE):
                    source_set = policy_source_pod_ipset_name(policy.namespace, policy.name)
                    self.create_generic_hash_ipset(source_set, TYPE_HASH_IP, current_pod_ips)
                    self.process_egress_rules(policy, source_set, active_ipsets, version)
                    active_ipsets.add(source_set)
        log.debug("Syncing network policy chains took %.3fs", time.monotonic() - start)
        return active_chains, active_ipsets

    def process_ingress_rules(
        self,
        policy: NetworkPolicyInfo,
        target_dest_pod_ipset_name: str,
        active_policy_ipsets: Optional[set[str]],
        version: str,
    ) -> None:
        """Write the ACCEPT rules of the policy's ingress rules."""
        if policy.ingress_rules is None:
            return
        active = active_policy_ipsets if active_policy_ipsets is not None else set()
        target = target_dest_pod_ipset_name
        chain = network_policy_chain_name(policy.namespace, policy.name, version)
        suffix = f"{policy.name} namespace {policy.namespace}"
        from_pods = f"rule to ACCEPT traffic from source pods to dest pods selected by policy name {suffix}"
        from_all = f"rule to ACCEPT traffic from all sources to dest pods selected by policy name: {suffix}"
        from_blocks = (
            f"rule to ACCEPT traffic from specified ipBlocks to dest pods selected by policy name: {suffix}"
        )

        for rule_idx, rule in enumerate(policy.ingress_rules):
            if rule.src_pods:
                src_set = policy_indexed_source_pod_ipset_name(policy.namespace, policy.name, rule_idx)
                self.create_policy_indexed_ipset(active, src_set, TYPE_HASH_IP, get_ips_from_pods(rule.src_pods))
                if rule.ports:
                    self.create_pod_with_port_policy_rule(rule.ports, policy, chain, src_set, target)
                for port_idx, eps in enumerate(rule.named_ports):
                    named_set = policy_indexed_ingress_named_port_ipset_name(
                        policy.namespace, policy.name, rule_idx, port_idx
                    )
                    self.create_policy_indexed_ipset(active, named_set, TYPE_HASH_IP, eps.ips)
                    self.append_rule_to_policy_chain(
                        chain, from_pods, src_set, named_set, eps.protocol, eps.port, eps.endport
                    )
                if not rule.ports and not rule.named_ports:
                    self.append_rule_to_policy_chain(chain, from_pods, src_set, target, "", "", "")

            if rule.match_all_source and not rule.match_all_ports:
                for pp in rule.ports:
                    self.append_rule_to_policy_chain(chain, from_all, "", target, pp.protocol, pp.port, pp.endport)
                for port_idx, eps in enumerate(rule.named_ports):
                    named_set = policy_indexed_ingress_named_port_ipset_name(
                        policy.namespace, policy.name, rule_idx, port_idx
                    )
                    self.create_policy_indexed_ipset(active, named_set, TYPE_HASH_IP, eps.ips)
                    self.append_rule_to_policy_chain(
                        chain, from_all, "", named_set, eps.protocol, eps.port, eps.endport
                    )

            if rule.match_all_source and rule.match_all_ports:
                self.append_rule_to_policy_chain(chain, from_all, "", target, "", "", "")

            if rule.src_ip_blocks:
                block_set = policy_indexed_source_ipblock_ipset_name(policy.namespace, policy.name, rule_idx)
                active.add(block_set)
                self.ipset_table.refresh_set(block_set, rule.src_ip_blocks, TYPE_HASH_NET)
                if not rule.match_all_ports:
                    for pp in rule.ports:
                        self.append_rule_to_policy_chain(
                            chain, from_blocks, block_set, target, pp.protocol, pp.port, pp.endport
                        )
                    for port_idx, eps in enumerate(rule.named_ports):
                        named_set = policy_indexed_ingress_named_port_ipset_name(
                            policy.namespace, policy.name, rule_idx, port_idx
                        )
                        self.create_policy_indexed_ipset(active, named_set, TYPE_HASH_NET, eps.ips)
                        self.append_rule_to_policy_chain(
                            chain, from_blocks, block_set, named_set, eps.protocol, eps.port, eps.endport
                        )
                else:
                    self.append_rule_to_policy_chain(chain, from_blocks, block_set, target, "", "", "")

    def process_egress_rules(
        self,
        policy: NetworkPolicyInfo,
        target_source_pod_ipset_name: str,
        active_policy_ipsets: Optional[set[str]],
        version: str,
    ) -> None:
        """Write the ACCEPT rules of the policy's egress rules."""
        if policy.egress_rules is None:
            return
        active = active_policy_ipsets if active_policy_ipsets is not None else set()
        source = target_source_pod_ipset_name
        chain = network_policy_chain_name(policy.namespace, policy.name, version)
        suffix = f"{policy.name} namespace {policy.namespace}"
        to_pods = f"rule to ACCEPT traffic from source pods to dest pods selected by policy name {suffix}"
        to_all = f"rule to ACCEPT traffic from source pods to all destinations selected by policy name: {suffix}"
        to_blocks = (
            f"rule to ACCEPT traffic from source pods to specified ipBlocks selected by policy name: {suffix}"
        )

        for rule_idx, rule in enumerate(policy.egress_rules):
            if rule.dst_pods:
                dst_set = policy_indexed_destination_pod_ipset_name(policy.namespace, policy.name, rule_idx)
                self.create_policy_indexed_ipset(active, dst_set, TYPE_HASH_IP, get_ips_from_pods(rule.dst_pods))
                if rule.ports:
                    self.create_pod_with_port_policy_rule(rule.ports, policy, chain, source, dst_set)
                for port_idx, eps in enumerate(rule.named_ports):
                    named_set = policy_indexed_egress_named_port_ipset_name(
                        policy.namespace, policy.name, rule_idx, port_idx
                    )
                    self.create_policy_indexed_ipset(active, named_set, TYPE_HASH_IP, eps.ips)
                    self.append_rule_to_policy_chain(
                        chain, to_pods, source, named_set, eps.protocol, eps.port, eps.endport
                    )
                if not rule.ports and not rule.named_ports:
                    self.append_rule_to_policy_chain(chain, to_pods, source, dst_set, "", "", "")

            if rule.match_all_destinations and not rule.match_all_ports:
                for pp in [*rule.ports, *rule.named_ports]:
                    self.append_rule_to_policy_chain(chain, to_all, source, "", pp.protocol, pp.port, pp.endport)

            if rule.match_all_destinations and rule.match_all_ports:
                self.append_rule_to_policy_chain(chain, to_all, source, "", "", "", "")

            if rule.dst_ip_blocks:
                block_set = policy_indexed_destination_ipblock_ipset_name(policy.namespace, policy.name, rule_idx)
                active.add(block_set)
                self.ipset_table.refresh_set(block_set, rule.dst_ip_blocks, TYPE_HASH_NET)
                if not rule.match_all_ports:
                    for pp in rule.ports:
                        self.append_rule_to_policy_chain(
                            chain, to_blocks, source, block_set, pp.protocol, pp.port, pp.endport
                        )
                else:
                    self.append_rule_to_policy_chain(chain, to_blocks, source, block_set, "", "", "")

    def append_rule_to_policy_chain(
        self,
        policy_chain_name: str,
        comment: str,
        src_ipset_name: str,
        dst_ipset_name: str,
        protocol: str,
        dport: str,
        end_dport: str,
    ) -> None:
        """Write a MARK rule and a RETURN-on-mark rule with the given matches."""
        args = ["-A", policy_chain_name]
        if comment:
            args += ["-m", "comment", "--comment", f'"{comment}"']
        if src_ipset_name:
            args += ["-m", "set", "--match-set", src_ipset_name, "src"]
        if dst_ipset_name:
            args += ["-m", "set", "--match-set", dst_ipset_name, "dst"]
        if protocol:
            args += ["-p", protocol]
        if dport:
            args += ["--dport", f"{dport}:{end_dport}" if end_dport else dport]

        self.filter_table.write(" ".join([*args, "-j", "MARK", "--set-xmark", _POLICY_MARK, "\n"]))
        self.filter_table.write(" ".join([*args, "-m", "mark", "--mark", _POLICY_MARK, "-j", "RETURN", "\n"]))

    def create_generic_hash_ipset(self, ipset_name: str, hash_type: str, ips: Iterable[str]) -> None:
        """Fill an ipset with the given addresses, each without timeout."""
        self.ipset_table.refresh_set(ipset_name, [[ip, OPTION_TIMEOUT, "0"] for ip in ips], hash_type)

    def create_policy_indexed_ipset(
        self, active_policy_ipsets: set[str], ipset_name: str, hash_type: str, ips: Iterable[str]
    ) -> None:
        """Fill an ipset and record it as active."""
        active_policy_ipsets.add(ipset_name)
        self.create_generic_hash_ipset(ipset_name, hash_type, ips)

    def create_pod_with_port_policy_rule(
        self,
        ports: Iterable[ProtocolAndPort],
        policy: NetworkPolicyInfo,
        policy_chain_name: str,
        src_set_name: str,
        dst_set_name: str,
    ) -> None:
        """Write a rule matching source set, destination set and port for each port."""
        comment = (
            "rule to ACCEPT traffic from source pods to dest pods selected by policy name "
            f"{policy.name} namespace {policy.namespace}"
        )
        for pp in ports:
            self.append_rule_to_policy_chain(
                policy_chain_name, comment, src_set_name, dst_set_name, pp.protocol, pp.port, pp.endport
            )