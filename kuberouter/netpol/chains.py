"""Filter table text buffer and deterministic iptables chain and ipset names."""

from __future__ import annotations

import base64
import hashlib

KUBE_POD_FIREWALL_CHAIN_PREFIX = "KUBE-POD-FW-"
KUBE_NETWORK_POLICY_CHAIN_PREFIX = "KUBE-NWPLCY-"
KUBE_SOURCE_IPSET_PREFIX = "KUBE-SRC-"
KUBE_DESTINATION_IPSET_PREFIX = "KUBE-DST-"
KUBE_INPUT_CHAIN_NAME = "KUBE-ROUTER-INPUT"
KUBE_FORWARD_CHAIN_NAME = "KUBE-ROUTER-FORWARD"
KUBE_OUTPUT_CHAIN_NAME = "KUBE-ROUTER-OUTPUT"
KUBE_DEFAULT_NETPOL_CHAIN = "KUBE-NWPLCY-DEFAULT"

DEFAULT_CHAINS = {
    "INPUT": KUBE_INPUT_CHAIN_NAME,
    "FORWARD": KUBE_FORWARD_CHAIN_NAME,
    "OUTPUT": KUBE_OUTPUT_CHAIN_NAME,
}

_HASH_LENGTH = 16


class FilterTable:
    """Accumulates iptables-restore text for the filter table."""

    def __init__(self, text: str = "") -> None:
        self._parts: list[str] = [text] if text else []

    def write(self, text: str) -> None:
        """Append text to the buffer."""
        if text:
            self._parts.append(text)

    def reset(self) -> None:
        """Discard everything written so far."""
        self._parts.clear()

    def contains(self, text: str) -> bool:
        """True when text occurs anywhere in the buffer."""
        return text in self.text()

    def text(self) -> str:
        """Return the whole buffer as one string."""
        if len(self._parts) > 1:
            self._parts = ["".join(self._parts)]
        return self._parts[0] if self._parts else ""

    def __str__(self) -> str:
        return self.text()

    def __len__(self) -> int:
        return len(self.text())

    def __bool__(self) -> bool:
        return bool(self.text())


def _hashed_name(prefix: str, data: str) -> str:
    digest = hashlib.sha256(data.encode()).digest()
    encoded = base64.b32encode(digest).decode("ascii")
    return prefix + encoded[:_HASH_LENGTH]


def network_policy_chain_name(namespace: str, policy_name: str, version: str) -> str:
    """Name of the iptables chain holding a policy's rules for a sync version."""
    return _hashed_name(KUBE_NETWORK_POLICY_CHAIN_PREFIX, namespace + policy_name + version)


def pod_firewall_chain_name(namespace: str, pod_name: str, version: str) -> str:
    """Name of a pod's firewall chain for a sync version."""
    return _hashed_name(KUBE_POD_FIREWALL_CHAIN_PREFIX, namespace + pod_name + version)


def policy_source_pod_ipset_name(namespace: str, policy_name: str) -> str:
    return _hashed_name(KUBE_SOURCE_IPSET_PREFIX, namespace + policy_name)


def policy_destination_pod_ipset_name(namespace: str, policy_name: str) -> str:
    return _hashed_name(KUBE_DESTINATION_IPSET_PREFIX, namespace + policy_name)


def policy_indexed_source_pod_ipset_name(namespace: str, policy_name: str, ingress_rule_no: int) -> str:
    return _hashed_name(
        KUBE_SOURCE_IPSET_PREFIX,
        f"{namespace}{policy_name}ingressrule{ingress_rule_no}pod",
    )


def policy_indexed_destination_pod_ipset_name(namespace: str, policy_name: str, egress_rule_no: int) -> str:
    return _hashed_name(
        KUBE_DESTINATION_IPSET_PREFIX,
        f"{namespace}{policy_name}egressrule{egress_rule_no}pod",
    )


def policy_indexed_source_ipblock_ipset_name(namespace: str, policy_name: str, ingress_rule_no: int) -> str:
    return _hashed_name(
        KUBE_SOURCE_IPSET_PREFIX,
        f"{namespace}{policy_name}ingressrule{ingress_rule_no}ipblock",
    )


def policy_indexed_destination_ipblock_ipset_name(namespace: str, policy_name: str, egress_rule_no: int) -> str:
    return _hashed_name(
        KUBE_DESTINATION_IPSET_PREFIX,
        f"{namespace}{policy_name}egressrule{egress_rule_no}ipblock",
    )


def policy_indexed_ingress_named_port_ipset_name(
    namespace: str, policy_name: str, ingress_rule_no: int, named_port_no: int
) -> str:
    return _hashed_name(
        KUBE_DESTINATION_IPSET_PREFIX,
        f"{namespace}{policy_name}ingressrule{ingress_rule_no}{named_port_no}namedport",
    )


def policy_indexed_egress_named_port_ipset_name(
    namespace: str, policy_name: str, egress_rule_no: int, named_port_no: int
) -> str:
    return _hashed_name(
        KUBE_DESTINATION_IPSET_PREFIX,
        f"{namespace}{policy_name}egressrule{egress_rule_no}{named_port_no}namedport",
    )