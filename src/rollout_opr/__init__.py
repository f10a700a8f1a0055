"""Rollout engine: apply a manifest set and track its workloads to readiness."""
