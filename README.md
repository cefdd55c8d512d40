# kuberouter

A library that models Kubernetes NetworkPolicy objects and turns them into
iptables rules for the `filter` table and ipset contents. The rules are
written as `iptables-restore` text. Pod IPs and CIDR blocks go into ipsets.
Thin wrappers run the `iptables*` and `ipset` commands to apply the result.

## How the rules are laid out

- Every network policy gets a chain, `KUBE-NWPLCY-…`. Its rules match source
  and destination ipsets (`KUBE-SRC-…`, `KUBE-DST-…`) and optional protocols
  and ports. Each match writes a pair of rules: one that sets mark `0x10000`
  and one that returns when that mark is set.
- Every local pod gets a firewall chain, `KUBE-POD-FW-…`. This chain:
  - jumps to the policy chains that select the pod, or to
    `KUBE-NWPLCY-DEFAULT` when no ingress or no egress policy applies;
  - accepts traffic from the local node and traffic in RELATED/ESTABLISHED
    state, and drops traffic in INVALID state;
  - logs unmarked traffic through NFLOG group 100 and rejects it;
  - marks traffic that passes with `0x20000`.
- Rules in `KUBE-ROUTER-FORWARD` and `KUBE-ROUTER-OUTPUT` send traffic to and
  from each pod through its chain. Outbound traffic also goes through
  `KUBE-ROUTER-INPUT`.

Chain and ipset names are the first 16 base32 characters of a SHA-256 hash
of the namespace, the name and, for chains, a sync version string.

## Modules

- `kuberouter.netpol.resources`
  - Dataclasses: `Pod`, `Container`, `ContainerPort`, `Namespace`,
    `LabelSelector` (with `LabelSelectorRequirement`), `NetworkPolicy`,
    `NetworkPolicyPeer`, `IPBlock`, `NetworkPolicyPort`, `IngressRuleSpec`
    and `EgressRuleSpec`.
  - Enums: `PodPhase` and `PolicyType`.
  - `ResourceStore`, a thread-safe store keyed by `namespace/name`.
  - `is_finished`, `is_netpol_actionable` and `is_pod_update_netpol_relevant`.
  - `validate_node_port_range`, which accepts `start-end` or `start:end`,
    returns `start:end`, and raises `ValueError` for a bad range.
- `kuberouter.netpol.policyinfo`
  - `build_network_policies_info(pods, namespaces, policies)` resolves each
    policy into a `NetworkPolicyInfo`. That record holds the target pods,
    `IngressRule` / `EgressRule` lists and a policy type of `"ingress"`,
    `"egress"` or `"both"`.
  - Helpers: `eval_pod_peer`, `eval_ipblock_peer` (splits `/0` into two `/1`
    halves), `process_network_policy_ports`, `grab_named_port_from_pod`,
    `list_pods_by_namespace_and_labels`, `list_namespaces_by_labels` and
    `policy_rule_ports_has_named_port`.
- `kuberouter.netpol.chains`
  - `FilterTable`, a text buffer with `write`, `reset`, `contains` and `text`.
  - The hashed name functions, such as `network_policy_chain_name`,
    `pod_firewall_chain_name` and `policy_source_pod_ipset_name`.
- `kuberouter.netpol.rules`
  - `PolicyChainBuilder` writes the policy chains into a `FilterTable` and
    fills an `IPSetTable`. `sync_network_policy_chains` returns the sets of
    active chain names and active ipset names.
  - Also provides `get_ips_from_pods`.
- `kuberouter.netpol.firewall`
  - `get_local_pods` picks the actionable pods on a node.
  - `sync_pod_firewall_chains` writes every pod chain and returns the chain
    names.
  - Helpers: `setup_pod_netpol_rules`, `intercept_pod_inbound_traffic`,
    `intercept_pod_outbound_traffic` and `drop_unmarked_traffic_rules`.
- `kuberouter.netpol.iptables`
  - `IptablesRunner` has `save`, `restore`, `exists`, `insert`, `delete`,
    `list_rules`, `list_chains`, `chain_exists`, `new_chain` and
    `append_unique`.
  - `IpsetRunner` has `list_set_names`, `destroy`, and `restore`, which feeds
    an `IPSetTable` to `ipset restore -exist`.
  - A failing command raises `CommandError`.
  - Text helpers: `add_uuid_for_rule_spec` and `append_unique_rule`.

## Examples

Validate a node port range:

```python
from kuberouter.netpol.resources import validate_node_port_range

validate_node_port_range("30000-32767")   # "30000:32767"
validate_node_port_range("2000:1000")     # raises ValueError
```

Names are stable:

```python
from kuberouter.netpol.chains import network_policy_chain_name

network_policy_chain_name("nsA", "simple-egress", "1")   # "KUBE-NWPLCY-QHFGOTFJZFXUJVTH"
```

Render a policy and the pod chains:

```python
from kuberouter.netpol.chains import FilterTable
from kuberouter.netpol.firewall import get_local_pods, sync_pod_firewall_chains
from kuberouter.netpol.policyinfo import build_network_policies_info
from kuberouter.netpol.resources import (
    EgressRuleSpec, LabelSelector, NetworkPolicy, NetworkPolicyPort, Pod, PolicyType,
)
from kuberouter.netpol.rules import PolicyChainBuilder

pods = [Pod(name="web", namespace="nsA", labels={"app": "a"},
            pod_ip="10.1.1.1", host_ip="10.10.10.10")]
policy = NetworkPolicy(
    name="simple-egress", namespace="nsA",
    pod_selector=LabelSelector(match_labels={"app": "a"}),
    policy_types=[PolicyType.EGRESS],
    egress=[EgressRuleSpec(ports=[NetworkPolicyPort(port=30000)])],
)
infos = build_network_policies_info(pods, [], [policy])

table = FilterTable()
builder = PolicyChainBuilder(filter_table=table)
chains, ipsets = builder.sync_network_policy_chains(infos, "1")
pod_chains = sync_pod_firewall_chains(table, get_local_pods(pods, "10.10.10.10"), infos, "1")
print(table.text())
```

Apply the ipsets built above (needs root and the `ipset` command):

```python
from kuberouter.netpol.iptables import IpsetRunner

IpsetRunner().restore(builder.ipset_table)
```

## What this package does not do

- It does not watch a Kubernetes API server. Pods, namespaces and policies
  are passed in by the caller, for example from a `ResourceStore`.
- It does not run a sync loop.
- It does not set up the top-level `KUBE-ROUTER-*` chains or the
  `KUBE-NWPLCY-DEFAULT` chain on the host.
- It does not remove stale chains or ipsets.
- It has no command-line program.

The rendered text covers only the chains and rules. To load it with
`IptablesRunner.restore`, the caller must wrap it as a complete
`iptables-restore` document (`*filter` … `COMMIT`).

## Requirements

Building the model and rendering rules needs only Python 3.10 or later.
Running `IptablesRunner` or `IpsetRunner` needs all of the following:

- a Linux host;
- root privileges;
- the `iptables`, `iptables-save`, `iptables-restore` and `ipset` commands.