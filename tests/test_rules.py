import pytest

from kuberouter.netpol.chains import (
    FilterTable,
    network_policy_chain_name,
    policy_destination_pod_ipset_name,
    policy_indexed_source_ipblock_ipset_name,
    policy_indexed_source_pod_ipset_name,
    policy_source_pod_ipset_name,
)
from kuberouter.netpol.policyinfo import PodInfo, build_network_policies_info
from kuberouter.netpol.resources import (
    EgressRuleSpec,
    IngressRuleSpec,
    IPBlock,
    LabelSelector,
    LabelSelectorRequirement,
    Namespace,
    NetworkPolicy,
    NetworkPolicyPeer,
    NetworkPolicyPort,
    Pod,
    PolicyType,
)
from kuberouter.netpol.rules import (
    TYPE_HASH_IP,
    TYPE_HASH_NET,
    IPSetTable,
    PolicyChainBuilder,
    get_ips_from_pods,
)


def _fake_pods():
    specs = [
        ("Aa", {"app": "a"}, "nsA", "1.1"),
        ("Aaa", {"app": "a", "component": "a"}, "nsA", "1.2"),
        ("Aab", {"app": "a", "component": "b"}, "nsA", "1.3"),
        ("Aac", {"app": "a", "component": "c"}, "nsA", "1.4"),
        ("Ba", {"app": "a"}, "nsB", "2.1"),
        ("Baa", {"app": "a", "component": "a"}, "nsB", "2.2"),
        ("Bab", {"app": "a", "component": "b"}, "nsB", "2.3"),
        ("Ca", {"app": "a"}, "nsC", "3.1"),
    ]
    return [Pod(name=n, labels=l, namespace=ns, pod_ip="1.1." + ip) for n, l, ns, ip in specs]


def _fake_namespaces():
    return [
        Namespace("nsA", {"name": "a", "team": "a"}),
        Namespace("nsB", {"name": "b", "team": "a"}),
        Namespace("nsC", {"name": "c"}),
        Namespace("nsD", {"name": "d"}),
    ]


def _policy(name, ingress=None, egress=None, namespace="nsA"):
    types = []
    if ingress:
        types.append(PolicyType.INGRESS)
    if egress:
        types.append(PolicyType.EGRESS)
    return NetworkPolicy(
        name=name,
        namespace=namespace,
        pod_selector=LabelSelector(
            match_expressions=[LabelSelectorRequirement("app", "In", ["a"])]
        ),
        policy_types=types,
        ingress=ingress or None,
        egress=egress or None,
    )


BUILDER_CASES = [
    (
        _policy("simple-egress", egress=[EgressRuleSpec(ports=[NetworkPolicyPort(port=30000)])]),
        "-A KUBE-NWPLCY-QHFGOTFJZFXUJVTH -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: simple-egress namespace nsA\" --dport 30000 -j MARK --set-xmark 0x10000/0x10000 \n"
        "-A KUBE-NWPLCY-QHFGOTFJZFXUJVTH -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: simple-egress namespace nsA\" --dport 30000 -m mark --mark 0x10000/0x10000 -j RETURN \n",
    ),
    (
        _policy(
            "simple-ingress-egress",
            egress=[EgressRuleSpec(ports=[NetworkPolicyPort(port=30000)])],
            ingress=[IngressRuleSpec(ports=[NetworkPolicyPort(port=37000)])],
        ),
        "-A KUBE-NWPLCY-KO52PWL34ABMMBI7 -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: simple-ingress-egress namespace nsA\" --dport 30000 -j MARK --set-xmark 0x10000/0x10000 \n"
        "-A KUBE-NWPLCY-KO52PWL34ABMMBI7 -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: simple-ingress-egress namespace nsA\" --dport 30000 -m mark --mark 0x10000/0x10000 -j RETURN \n"
        "-A KUBE-NWPLCY-KO52PWL34ABMMBI7 -m comment --comment \"rule to ACCEPT traffic from all sources to dest pods selected by policy name: simple-ingress-egress namespace nsA\" --dport 37000 -j MARK --set-xmark 0x10000/0x10000 \n"
        "-A KUBE-NWPLCY-KO52PWL34ABMMBI7 -m comment --comment \"rule to ACCEPT traffic from all sources to dest pods selected by policy name: simple-ingress-egress namespace nsA\" --dport 37000 -m mark --mark 0x10000/0x10000 -j RETURN \n",
    ),
    (
        _policy(
            "simple-egress-pr",
            egress=[
                EgressRuleSpec(
                    ports=[
                        NetworkPolicyPort(port=30000, end_port=31000),
                        NetworkPolicyPort(port=34000, end_port=35000),
                    ]
                )
            ],
        ),
        "-A KUBE-NWPLCY-SQYQ7PVNG6A6Q3DU -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: simple-egress-pr namespace nsA\" --dport 30000:31000 -j MARK --set-xmark 0x10000/0x10000 \n"
        "-A KUBE-NWPLCY-SQYQ7PVNG6A6Q3DU -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: simple-egress-pr namespace nsA\" --dport 30000:31000 -m mark --mark 0x10000/0x10000 -j RETURN \n"
        "-A KUBE-NWPLCY-SQYQ7PVNG6A6Q3DU -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: simple-egress-pr namespace nsA\" --dport 34000:35000 -j MARK --set-xmark 0x10000/0x10000 \n"
        "-A KUBE-NWPLCY-SQYQ7PVNG6A6Q3DU -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: simple-egress-pr namespace nsA\" --dport 34000:35000 -m mark --mark 0x10000/0x10000 -j RETURN \n",
    ),
    (
        _policy(
            "invalid-endport",
            egress=[EgressRuleSpec(ports=[NetworkPolicyPort(port=34000, end_port=31000)])],
        ),
        "-A KUBE-NWPLCY-2A4DPWPR5REBS66I -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: invalid-endport namespace nsA\" --dport 34000 -j MARK --set-xmark 0x10000/0x10000 \n"
        "-A KUBE-NWPLCY-2A4DPWPR5REBS66I -m comment --comment \"rule to ACCEPT traffic from source pods to all destinations selected by policy name: invalid-endport namespace nsA\" --dport 34000 -m mark --mark 0x10000/0x10000 -j RETURN \n",
    ),
]


@pytest.mark.parametrize(
    "policy,expected",
    BUILDER_CASES,
    ids=["simple-egress", "simple-ingress-egress", "egress-port-range", "invalid-endport"],
)
def test_network_policy_builder(policy, expected):
    infos = build_network_policies_info(_fake_pods(), _fake_namespaces(), [policy])
    builder = PolicyChainBuilder(FilterTable(), IPSetTable())
    for info in infos:
        if info.policy_type in ("egress", "both"):
            builder.process_egress_rules(info, "", None, "1")
        if info.policy_type in ("ingress", "both"):
            builder.process_ingress_rules(info, "", None, "1")
    assert builder.filter_table.text() == expected


def test_append_rule_with_all_matches():
    builder = PolicyChainBuilder()
    builder.append_rule_to_policy_chain("CHAIN", "c", "SRC", "DST", "TCP", "80", "90")
    common = '-A CHAIN -m comment --comment "c" -m set --match-set SRC src -m set --match-set DST dst -p TCP --dport 80:90'
    assert builder.filter_table.text() == (
        common + " -j MARK --set-xmark 0x10000/0x10000 \n"
        + common + " -m mark --mark 0x10000/0x10000 -j RETURN \n"
    )


def test_append_rule_without_comment_or_port():
    builder = PolicyChainBuilder()
    builder.append_rule_to_policy_chain("CHAIN", "", "", "DST", "", "", "")
    assert builder.filter_table.text() == (
        "-A CHAIN -m set --match-set DST dst -j MARK --set-xmark 0x10000/0x10000 \n"
        "-A CHAIN -m set --match-set DST dst -m mark --mark 0x10000/0x10000 -j RETURN \n"
    )


def test_get_ips_from_pods_keeps_order():
    pods = [PodInfo("10.0.0.2", "b", "ns"), PodInfo("10.0.0.1", "a", "ns")]
    assert get_ips_from_pods(pods) == ["10.0.0.2", "10.0.0.1"]


def test_ipset_table_refresh_replaces_entries():
    table = IPSetTable()
    table.refresh_set("S", [["1.1.1.1", "timeout", "0"]], TYPE_HASH_IP)
    table.refresh_set("S", [["2.2.2.2", "timeout", "0"]], TYPE_HASH_NET)
    assert len(table) == 1
    assert table["S"].entries == [["2.2.2.2", "timeout", "0"]]
    assert table["S"].set_type == TYPE_HASH_NET


def test_sync_ingress_policy_with_pod_peer():
    policy = _policy(
        "from-b",
        ingress=[
            IngressRuleSpec(
                from_=[NetworkPolicyPeer(pod_selector=LabelSelector(match_labels={"component": "b"}))]
            )
        ],
    )
    infos = build_network_policies_info(_fake_pods(), _fake_namespaces(), [policy])
    builder = PolicyChainBuilder()
    chains, ipsets = builder.sync_network_policy_chains(infos, "7")

    chain = network_policy_chain_name("nsA", "from-b", "7")
    dest_set = policy_destination_pod_ipset_name("nsA", "from-b")
    src_set = policy_indexed_source_pod_ipset_name("nsA", "from-b", 0)
    assert chains == {chain}
    assert ipsets == {dest_set, src_set}
    assert builder.filter_table.text().startswith(f":{chain}\n")
    assert f"--match-set {src_set} src -m set --match-set {dest_set} dst" in builder.filter_table.text()
    assert builder.ipset_table[src_set].entries == [["1.1.1.3", "timeout", "0"]]
    assert sorted(e[0] for e in builder.ipset_table[dest_set].entries) == [
        "1.1.1.1", "1.1.1.2", "1.1.1.3", "1.1.1.4"
    ]
    assert builder.ipset_table[dest_set].set_type == TYPE_HASH_IP
    assert policy_source_pod_ipset_name("nsA", "from-b") not in builder.ipset_table


def test_sync_ingress_policy_with_ip_block():
    policy = _policy(
        "blocks",
        ingress=[
            IngressRuleSpec(
                from_=[NetworkPolicyPeer(ip_block=IPBlock("10.0.0.0/8", ["10.1.0.0/16"]))]
            )
        ],
    )
    infos = build_network_policies_info(_fake_pods(), _fake_namespaces(), [policy])
    builder = PolicyChainBuilder()
    _, ipsets = builder.sync_network_policy_chains(infos, "1")

    block_set = policy_indexed_source_ipblock_ipset_name("nsA", "blocks", 0)
    dest_set = policy_destination_pod_ipset_name("nsA", "blocks")
    assert block_set in ipsets
    assert builder.ipset_table[block_set].set_type == TYPE_HASH_NET
    assert builder.ipset_table[block_set].entries == [
        ["10.0.0.0/8", "timeout", "0"],
        ["10.1.0.0/16", "timeout", "0", "nomatch"],
    ]
    assert f"--match-set {block_set} src -m set --match-set {dest_set} dst -j MARK" in builder.filter_table.text()


def test_policy_without_ingress_rules_writes_nothing():
    policy = NetworkPolicy(name="deny", namespace="nsA", policy_types=[PolicyType.INGRESS])
    infos = build_network_policies_info(_fake_pods(), _fake_namespaces(), [policy])
    builder = PolicyChainBuilder()
    builder.process_ingress_rules(infos[0], "DST", set(), "1")
    assert builder.filter_table.text() == ""