"""
topology_reconciler

This package reconciles multi region EKS cluster topology against a layered,
declarative description of the desired state.

We keep modules small and well separated:
core contains the topology model, errors, retry and event plumbing
desired contains layered configuration sources and the desired state loader
observed contains the observed state collector
planner contains the diff engine
execution contains control plane clients, boto3 backed and in memory
agent contains the reconciler, the region coordinator and the runner
"""

__version__ = "0.1.0"
