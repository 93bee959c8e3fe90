"""
Tests for role topology, update ordering and group status.
"""
from dbha.config.settings import Settings
from dbha.core.cluster import Cluster, ClusterConfig, Leader, Member
from dbha.core.state_machine import MemberRole
from dbha.core.topology import AccessMode, RoleSpec, Topology, UpdateStrategy, pod_ordinal
from tests.conftest import make_topology, pod

NOW = 1_700_000_000.0


def mixed_topology(strategy: UpdateStrategy = UpdateStrategy.SERIAL) -> Topology:
    return Topology(
        replicas=4,
        followers=[
            RoleSpec(name="reporting", access_mode=AccessMode.READ_WRITE, replicas=1),
            RoleSpec(name="standby", access_mode=AccessMode.NONE, replicas=1),
        ],
        learner=RoleSpec(name="learner", access_mode=AccessMode.READONLY, replicas=1),
        update_strategy=strategy,
    )


ROLES = {
    pod(0): MemberRole.LEADER,
    pod(1): MemberRole.FOLLOWER,
    pod(2): MemberRole.FOLLOWER,
    pod(3): MemberRole.LEARNER,
}


def test_pod_ordinal():
    assert pod_ordinal("pg-postgresql-12") == 12
    assert pod_ordinal("standalone") is None


def test_learner_is_highest_ordinal():
    topology = make_topology(replicas=4, learner_replicas=1)

    assert topology.is_learner(pod(3))
    assert not topology.is_learner(pod(2))
    assert not topology.is_learner("no-ordinal")
    assert topology.declared_role(pod(3)) == MemberRole.LEARNER
    assert topology.declared_role(pod(0)) == MemberRole.FOLLOWER
    assert not topology.is_legal_switchover_target(pod(3))


def test_no_learner_declared():
    topology = make_topology(replicas=3)

    assert topology.learner_replicas == 0
    assert not topology.is_learner(pod(2))


def test_from_settings():
    settings = Settings(
        pod_name=pod(0),
        cluster_name="pg",
        component_name="postgresql",
        replicas=3,
        learner_replicas=1,
        update_strategy="BestEffortParallel",
    )

    topology = Topology.from_settings(settings)

    assert topology.learner_replicas == 1
    assert topology.followers[0].replicas == 1
    assert topology.followers[0].access_mode == AccessMode.READONLY
    assert topology.update_strategy == UpdateStrategy.BEST_EFFORT_PARALLEL


def test_access_modes():
    topology = make_topology(replicas=3, learner_replicas=1)

    assert topology.access_mode_for(MemberRole.LEADER) == AccessMode.READ_WRITE
    assert topology.access_mode_for(MemberRole.FOLLOWER) == AccessMode.READONLY
    assert topology.access_mode_for(MemberRole.LEARNER) == AccessMode.READONLY
    assert topology.access_mode_for(MemberRole.CANDIDATE) == AccessMode.NONE


def test_follower_groups_assigned_in_name_order():
    topology = mixed_topology()

    modes = topology.follower_access_modes([pod(2), pod(1)])

    assert modes == {pod(1): AccessMode.READ_WRITE, pod(2): AccessMode.NONE}
    assert topology.access_mode_for(MemberRole.FOLLOWER, pod(2), [pod(1), pod(2)]) == AccessMode.NONE


def test_serial_update_order():
    order = mixed_topology(UpdateStrategy.SERIAL).update_order(ROLES)

    assert order == [[pod(3)], [pod(2)], [pod(1)], [pod(0)]]


def test_best_effort_parallel_update_order():
    order = mixed_topology(UpdateStrategy.BEST_EFFORT_PARALLEL).update_order(ROLES)

    assert order == [[pod(3), pod(1)], [pod(2)], [pod(0)]]


def test_parallel_update_order():
    order = mixed_topology(UpdateStrategy.PARALLEL).update_order(ROLES)

    assert order == [[pod(3), pod(1), pod(2), pod(0)]]


def test_group_status_counts_ready_members():
    topology = make_topology(replicas=4, learner_replicas=1)
    members = {
        name: Member(name=name, role=role.value, running=True, touched_at=NOW)
        for name, role in ROLES.items()
    }
    cluster = Cluster(
        leader=Leader(name=pod(0), renew_time=NOW, ttl=15),
        members=members,
        config=ClusterConfig(ttl=15),
    )

    status = topology.group_status(cluster, NOW)

    assert status.ready_leader == 1
    assert status.ready_followers == 2
    assert status.ready_learners == 1
    assert status.is_read_write_service_ready
    assert status.is_readonly_service_ready


def test_group_status_without_leader():
    topology = make_topology(replicas=3)
    cluster = Cluster(
        leader=Leader(name=pod(0), renew_time=NOW - 30, ttl=15),
        members={pod(1): Member(name=pod(1), role="follower", running=False, touched_at=NOW)},
        config=ClusterConfig(ttl=15),
    )

    status = topology.group_status(cluster, NOW)

    assert status.ready_leader == 0
    assert status.ready_followers == 0
    assert not status.is_read_write_service_ready
    assert not status.is_readonly_service_ready
