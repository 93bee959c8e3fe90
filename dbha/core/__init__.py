"""
Core coordination primitives for the HA controller.

This package provides the shared-state side of a replica group:
- Lease record data model and candidate ranking
- Member role state machine
- Lease store backed by Kubernetes ConfigMaps
- Declared role / access-mode topology
"""

# Users should import directly from submodules:
# from dbha.core.cluster import Cluster, Leader, Member
# from dbha.core.lease_store import LeaseStore
# from dbha.core.state_machine import MemberRole, RoleStateMachine
# from dbha.core.topology import Topology
