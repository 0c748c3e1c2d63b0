"""
Cluster provisioning modules.
"""
from .network import NetworkFlags, ResolvedNetwork, resolve_network
from .planner import Features, PlanBuilder
from .teardown import build_delete_plan, delete_cluster
from .workflow import ClusterWorkflow, Stage, WorkflowOptions, WorkflowResult

__all__ = [
    'ClusterWorkflow',
    'Features',
    'NetworkFlags',
    'PlanBuilder',
    'ResolvedNetwork',
    'Stage',
    'WorkflowOptions',
    'WorkflowResult',
    'build_delete_plan',
    'delete_cluster',
    'resolve_network',
]
