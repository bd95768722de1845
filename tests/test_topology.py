"""
Tests for the topology spread rebalancing pass.
"""
import logging
import random
import threading

import pytest
from kubernetes import client

from spread_equalizer.errors import ClusterStateError, PolicyError
from spread_equalizer.policy import FailurePolicy, Namespaces, StrategyParams
from spread_equalizer.selectors import parse_selector
from spread_equalizer.topology import (
    REASON,
    DomainMembership,
    PodIdentity,
    TopologyDomain,
    build_domain_membership,
    constraints_for_namespace,
    dispatch_evictions,
    evaluate_namespace,
    evaluate_skew,
    extract_constraints,
    index_node_labels,
    plan_topology_spread,
    remove_pods_violating_topology_spread,
    select_candidates,
)

from tests.kube_objects import (
    FakeCluster,
    RecordingEvictor,
    make_constraint,
    make_node,
    make_pod,
    three_zone_nodes,
)

ZONE1 = TopologyDomain("zone", "zone1")
ZONE2 = TopologyDomain("zone", "zone2")
ZONE3 = TopologyDomain("zone", "zone3")


def _web(name, node, **kwargs):
    kwargs.setdefault("constraints", [make_constraint()])
    return make_pod(name, node, **kwargs)


def _scenario_pods():
    # zone1 has 2 matching pods, zone2 has 1, zone3 has none
    return [
        _web("web-1", "node-a", started_minutes=0),
        _web("web-2", "node-a", started_minutes=5),
        _web("web-3", "node-b"),
    ]


def _membership(pods, constraint=None, nodes=None, namespace="default"):
    return build_domain_membership(
        namespace,
        constraint or make_constraint(),
        pods,
        index_node_labels(nodes or three_zone_nodes()),
    )


def _names(pods):
    return sorted(pod.metadata.name for pod in pods)


class TestConstraintExtraction:

    def test_pod_without_constraints(self):
        assert extract_constraints(make_pod("solo", "node-a")) == []

    def test_pod_with_constraints(self):
        zone = make_constraint("zone")
        rack = make_constraint("rack", max_skew=2)
        pod = make_pod("web", "node-a", constraints=[zone, rack])

        assert extract_constraints(pod) == [zone, rack]

    def test_identical_constraints_from_replicas_are_kept_once(self):
        pods = [_web(f"web-{i}", "node-a") for i in range(5)]

        constraints = constraints_for_namespace("default", pods, StrategyParams())

        assert len(constraints) == 1

    def test_policy_constraints_are_added(self):
        rack = make_constraint("rack")
        params = StrategyParams(namespaced_constraints={"default": [rack], "other": [rack]})

        constraints = constraints_for_namespace("default", _scenario_pods(), params)

        assert [c.topology_key for c in constraints] == ["zone", "rack"]


class TestDomainMembership:

    def test_pods_grouped_by_domain(self):
        membership = _membership(_scenario_pods())

        assert _names(membership.members[ZONE1]) == ["web-1", "web-2"]
        assert _names(membership.members[ZONE2]) == ["web-3"]

    def test_domain_without_pods_is_present(self):
        membership = _membership(_scenario_pods())

        assert membership.members[ZONE3] == []

    def test_unscheduled_and_unknown_node_pods_are_ignored(self):
        pods = _scenario_pods() + [_web("pending", None), _web("elsewhere", "node-gone")]

        membership = _membership(pods)

        members = [pod for pods in membership.members.values() for pod in pods]
        assert "pending" not in _names(members)
        assert "elsewhere" not in _names(members)

    def test_node_without_topology_key_does_not_participate(self):
        nodes = three_zone_nodes() + [make_node("node-d", {"rack": "r1"})]
        pods = _scenario_pods() + [_web("web-4", "node-d")]

        membership = _membership(pods, nodes=nodes)

        assert set(membership.members) == {ZONE1, ZONE2, ZONE3}
        assert sum(len(p) for p in membership.members.values()) == 3

    def test_empty_topology_value_is_not_a_domain(self):
        nodes = three_zone_nodes() + [make_node("node-d", {"zone": ""})]
        pods = _scenario_pods() + [_web("web-4", "node-d")]

        membership = _membership(pods, nodes=nodes)

        assert set(membership.members) == {ZONE1, ZONE2, ZONE3}
        assert "web-4" not in _names(
            [pod for pods in membership.members.values() for pod in pods]
        )
        assert membership.members[ZONE3] == []

    def test_selector_and_namespace_must_match(self):
        pods = _scenario_pods() + [
            make_pod("db", "node-c", labels={"app": "db"}),
            make_pod("web-other-ns", "node-c", namespace="other"),
        ]

        membership = _membership(pods)

        assert membership.members[ZONE3] == []

    def test_non_evictable_pods_can_be_left_out(self):
        pods = _scenario_pods()

        membership = build_domain_membership(
            "default",
            make_constraint(),
            pods,
            index_node_labels(three_zone_nodes()),
            is_evictable=lambda pod: pod.metadata.name != "web-1",
        )

        assert _names(membership.members[ZONE1]) == ["web-2"]

    def test_malformed_selector_skips_constraint(self, caplog):
        broken = make_constraint(
            selector=client.V1LabelSelector(
                match_expressions=[
                    client.V1LabelSelectorRequirement(key="app", operator="Bogus", values=["web"])
                ]
            )
        )

        with caplog.at_level(logging.ERROR):
            assert _membership(_scenario_pods(), constraint=broken) is None
        assert "couldn't parse label selector" in caplog.text


class TestSkewEvaluation:

    def test_three_zone_scenario(self):
        record = evaluate_skew(_membership(_scenario_pods()))

        assert record.counts == {ZONE1: 2, ZONE2: 1, ZONE3: 0}
        assert record.minimum == 0
        assert record.quotas == {ZONE1: 1}

    def test_quota_with_larger_max_skew(self):
        pods = [_web(f"web-{i}", "node-a") for i in range(4)] + [_web("web-b", "node-b")]
        membership = _membership(pods, constraint=make_constraint(max_skew=2))

        record = evaluate_skew(membership)

        assert record.minimum == 0
        assert record.quotas == {ZONE1: 2}

    def test_balanced_domains_have_no_quota(self):
        pods = [_web("web-a", "node-a"), _web("web-b", "node-b"), _web("web-c", "node-c")]

        record = evaluate_skew(_membership(pods))

        assert record.quotas == {}

    def test_no_domains(self):
        record = evaluate_skew(_membership(_scenario_pods(), nodes=[make_node("bare")]))

        assert record.counts == {}
        assert record.quotas == {}

    def test_zero_max_skew_is_rejected(self):
        membership = DomainMembership(
            namespace="default",
            topology_key="zone",
            max_skew=0,
            selector=parse_selector({}),
            members={ZONE1: [], ZONE2: []},
        )

        with pytest.raises(PolicyError):
            evaluate_skew(membership)

    def test_pod_declared_zero_max_skew_is_ignored(self, caplog):
        pods = [_web(f"web-{i}", "node-a", constraints=[make_constraint(max_skew=0)]) for i in range(3)]

        with caplog.at_level(logging.ERROR):
            records = evaluate_namespace(
                "default", pods, index_node_labels(three_zone_nodes()), StrategyParams()
            )

        assert records == []
        assert "maxSkew" in caplog.text

    def test_valid_constraint_survives_broken_sibling(self):
        broken = make_constraint(
            key="rack",
            selector=client.V1LabelSelector(match_labels={"app": "not a valid value!"}),
        )
        pods = [
            _web("web-1", "node-a", constraints=[broken, make_constraint()]),
            _web("web-2", "node-a", constraints=[broken, make_constraint()]),
        ]

        records = evaluate_namespace(
            "default", pods, index_node_labels(three_zone_nodes()), StrategyParams()
        )

        assert len(records) == 1
        assert records[0].membership.topology_key == "zone"
        assert records[0].quotas == {ZONE1: 1}


class TestCandidateSelection:

    def test_newest_pod_selected(self):
        record = evaluate_skew(_membership(_scenario_pods()))

        candidates = select_candidates([record])

        assert [str(c.identity) for c in candidates] == ["default/web-2"]
        assert candidates[0].reason == REASON
        assert candidates[0].node_name == "node-a"

    def test_lowest_priority_selected_first(self):
        pods = [
            _web("important", "node-a", priority=1000, started_minutes=10),
            _web("cheap", "node-a", priority=0),
        ]

        candidates = select_candidates([evaluate_skew(_membership(pods))])

        assert [c.identity.name for c in candidates] == ["cheap"]

    def test_selection_is_deterministic(self):
        pods = [_web(f"web-{i}", "node-a") for i in range(6)] + [_web("web-b", "node-b")]
        first = select_candidates([evaluate_skew(_membership(pods))])

        shuffled = list(pods)
        random.Random(7).shuffle(shuffled)
        second = select_candidates([evaluate_skew(_membership(shuffled))])

        assert [c.identity for c in first] == [c.identity for c in second]
        assert [c.identity.name for c in first] == ["web-0", "web-1", "web-2", "web-3", "web-4"]

    def test_pod_selected_by_two_constraints_appears_once(self):
        nodes = [
            make_node("node-a", {"zone": "zone1", "rack": "r1"}),
            make_node("node-b", {"zone": "zone2", "rack": "r2"}),
        ]
        constraints = [make_constraint("zone"), make_constraint("rack")]
        pods = [_web(f"web-{i}", "node-a", constraints=constraints) for i in range(3)]
        labels = index_node_labels(nodes)
        records = [
            evaluate_skew(build_domain_membership("default", c, pods, labels))
            for c in constraints
        ]

        candidates = select_candidates(records)

        assert len(candidates) == 2
        assert len({c.identity for c in candidates}) == 2
        assert all(len(c.selected_by) == 2 for c in candidates)

    def test_shortage_of_evictable_pods(self, caplog):
        pods = _scenario_pods()
        record = evaluate_skew(_membership(pods))

        with caplog.at_level(logging.WARNING):
            candidates = select_candidates([record], is_evictable=lambda pod: False)

        assert candidates == []
        assert "will remain imbalanced" in caplog.text


class TestDispatch:

    def _candidates(self):
        pods = [_web(f"web-{i}", "node-a") for i in range(4)]
        return select_candidates([evaluate_skew(_membership(pods))])

    def test_abort_on_first_error(self):
        candidates = self._candidates()
        evictor = RecordingEvictor(fail={candidates[0].identity.name})

        result = dispatch_evictions(candidates, evictor, FailurePolicy.ABORT)

        assert len(evictor.calls) == 1
        assert result.aborted
        assert len(result.errors) == 1
        assert result.evicted == []

    def test_continue_after_error(self):
        candidates = self._candidates()
        failing = candidates[0].identity
        evictor = RecordingEvictor(fail={failing.name})

        result = dispatch_evictions(candidates, evictor, FailurePolicy.CONTINUE)

        assert len(evictor.calls) == len(candidates)
        assert not result.aborted
        assert result.evicted == [c.identity for c in candidates[1:]]

    def test_refusal_is_not_an_error(self):
        candidates = self._candidates()
        evictor = RecordingEvictor(refuse={candidates[0].identity.name})

        result = dispatch_evictions(candidates, evictor)

        assert result.refused == [candidates[0].identity]
        assert result.errors == []
        assert len(result.evicted) == len(candidates) - 1

    def test_cancellation_stops_dispatch(self):
        candidates = self._candidates()
        stop = threading.Event()
        evictor = RecordingEvictor(on_evict=lambda pod: stop.set())

        result = dispatch_evictions(candidates, evictor, stop=stop)

        assert len(evictor.calls) == 1
        assert result.cancelled
        assert result.evicted == [candidates[0].identity]


class TestPass:

    def test_scenario_evicts_one_pod_from_zone1(self):
        cluster = FakeCluster(three_zone_nodes(), _scenario_pods())
        evictor = RecordingEvictor()

        result = remove_pods_violating_topology_spread(cluster, evictor)

        assert evictor.calls == [("default", "web-2", "node-a", REASON)]
        assert result.evicted == [PodIdentity("default", "web-2")]

    def test_dedup_issues_one_evict_call_per_pod(self):
        nodes = [
            make_node("node-a", {"zone": "zone1", "rack": "r1"}),
            make_node("node-b", {"zone": "zone2", "rack": "r2"}),
        ]
        constraints = [make_constraint("zone"), make_constraint("rack")]
        pods = [_web(f"web-{i}", "node-a", constraints=constraints) for i in range(3)]
        evictor = RecordingEvictor()

        remove_pods_violating_topology_spread(FakeCluster(nodes, pods), evictor)

        names = [call[1] for call in evictor.calls]
        assert sorted(names) == sorted(set(names))
        assert len(names) == 2

    def test_second_pass_after_evictions_has_nothing_to_do(self):
        pods = [_web(f"web-{i}", "node-a", started_minutes=i) for i in range(5)]
        pods.append(_web("web-b", "node-b"))
        evictor = RecordingEvictor()

        first = remove_pods_violating_topology_spread(FakeCluster(three_zone_nodes(), pods), evictor)

        gone = set(first.evicted)
        remaining = [pod for pod in pods if PodIdentity.of(pod) not in gone]
        second = plan_topology_spread(FakeCluster(three_zone_nodes(), remaining))

        assert first.total_quota == 4
        assert second.total_quota == 0
        assert second.candidates == []
        counts = second.records[0].counts
        assert max(counts.values()) - min(counts.values()) <= 1

    def test_same_snapshot_gives_same_plan(self):
        cluster = FakeCluster(three_zone_nodes(), _scenario_pods())

        first = plan_topology_spread(cluster)
        second = plan_topology_spread(cluster)

        assert [c.identity for c in first.candidates] == [c.identity for c in second.candidates]

    def test_non_evictable_pods_not_counted_by_default(self):
        pods = [_web("web-1", "node-a"), _web("web-2", "node-a"), _web("pinned", "node-a")]
        evictor = RecordingEvictor(evictable=lambda pod: pod.metadata.name != "pinned")

        result = remove_pods_violating_topology_spread(
            FakeCluster(three_zone_nodes(), pods), evictor
        )

        assert result.records[0].counts[ZONE1] == 2
        assert len(result.evicted) == 1

    def test_non_evictable_pods_counted_when_asked(self):
        pods = [_web("web-1", "node-a"), _web("web-2", "node-a"), _web("pinned", "node-a")]
        evictor = RecordingEvictor(evictable=lambda pod: pod.metadata.name != "pinned")
        params = StrategyParams(count_non_evictable=True)

        result = remove_pods_violating_topology_spread(
            FakeCluster(three_zone_nodes(), pods), evictor, params
        )

        assert result.records[0].counts[ZONE1] == 3
        assert sorted(i.name for i in result.evicted) == ["web-1", "web-2"]

    def test_policy_constraints_apply_to_unconstrained_pods(self):
        pods = [make_pod(f"web-{i}", "node-a") for i in range(3)]
        params = StrategyParams(namespaced_constraints={"default": [make_constraint()]})

        result = plan_topology_spread(FakeCluster(three_zone_nodes(), pods), params=params)

        assert len(result.candidates) == 2

    def test_namespace_filters(self):
        pods = _scenario_pods() + [
            _web("web-x", "node-a", namespace="kube-system"),
            _web("web-y", "node-a", namespace="kube-system"),
        ]
        cluster = FakeCluster(three_zone_nodes(), pods)

        excluded = plan_topology_spread(
            cluster, params=StrategyParams(namespaces=Namespaces(exclude=["kube-system"]))
        )
        included = plan_topology_spread(
            cluster, params=StrategyParams(namespaces=Namespaces(include=["kube-system"]))
        )

        assert {c.identity.namespace for c in excluded.candidates} == {"default"}
        assert {c.identity.namespace for c in included.candidates} == {"kube-system"}

    def test_failed_namespace_is_skipped(self):
        pods = _scenario_pods() + [_web("web-x", "node-a", namespace="broken")]
        cluster = FakeCluster(three_zone_nodes(), pods, failing_namespaces={"broken"})

        result = plan_topology_spread(cluster)

        assert len(result.errors) == 1
        assert isinstance(result.errors[0], ClusterStateError)
        assert [str(c.identity) for c in result.candidates] == ["default/web-2"]

    def test_node_listing_failure_is_fatal(self):
        cluster = FakeCluster(three_zone_nodes(), _scenario_pods(), fail_nodes=True)

        with pytest.raises(ClusterStateError):
            remove_pods_violating_topology_spread(cluster, RecordingEvictor())

    def test_cancelled_before_start(self):
        cluster = FakeCluster(three_zone_nodes(), _scenario_pods())
        stop = threading.Event()
        stop.set()
        evictor = RecordingEvictor()

        result = remove_pods_violating_topology_spread(cluster, evictor, stop=stop)

        assert result.cancelled
        assert cluster.calls == []
        assert evictor.calls == []

    def test_cancelled_while_listing_pods(self):
        stop = threading.Event()
        pods = _scenario_pods() + [make_pod("api-1", "node-a", namespace="other")]
        cluster = FakeCluster(
            three_zone_nodes(), pods, on_list_pods=lambda namespace: stop.set()
        )
        evictor = RecordingEvictor()

        result = remove_pods_violating_topology_spread(cluster, evictor, stop=stop)

        assert result.cancelled
        assert ("list_pods", "default") in cluster.calls
        assert ("list_pods", "other") not in cluster.calls
        assert result.candidates == []
        assert evictor.calls == []
