"""Milvus Cluster Operator (MCO).

Reconciles declarative Milvus deployments (distributed clusters and
standalone instances) into child resources and keeps their status current:
 - per-role configuration resolution (role override, common override, default)
 - config checksums that trigger restarts when runtime config changes
 - bounded fan-out of checks and reconcile steps
 - periodic health re-evaluation with write-on-change status updates
"""
