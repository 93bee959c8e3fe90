"""
Prometheus metrics for the HA controller.

Provides observability into reconciliation ticks and leadership changes.
"""
from prometheus_client import Counter, Gauge

from dbha.core.state_machine import MemberRole

# Reconciliation metrics
ticks_total = Counter(
    "dbha_ticks_total",
    "Total number of reconciliation ticks",
    ["outcome"],
)

# Lease metrics
lease_conflicts_total = Counter(
    "dbha_lease_conflicts_total",
    "Compare-and-swap writes on the lease record that lost a race",
    ["operation"],
)

lease_acquired_total = Counter(
    "dbha_lease_acquired_total",
    "Times this member acquired the leader lease",
)

renew_failures_total = Counter(
    "dbha_renew_failures_total",
    "Ticks in which the leader could not renew its lease",
)

# Engine metrics
demotions_total = Counter(
    "dbha_demotions_total",
    "Demotions of the local engine",
    ["reason"],
)

role = Gauge(
    "dbha_role",
    "Current role of this member (1 for the active role)",
    ["role"],
)


def set_role(current: MemberRole) -> None:
    """Export ``current`` as the only active role."""
    for member_role in MemberRole:
        role.labels(role=member_role.value).set(1 if member_role == current else 0)
