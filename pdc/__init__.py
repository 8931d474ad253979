"""Progressive Delivery Controller (PDC).

Runnable canary rollout controller that demonstrates:
 - weighted traffic shifting in declared steps
 - metric analysis with per-metric and rollout-wide failure budgets
 - automatic rollback when a canary regresses
 - one active rollout per service, many services in parallel

Traffic routers, metric sources and notifiers are pluggable collaborators.
"""
