"""
Swarm Controller Module

Task orchestration and resilience core for the AI development swarm.
Drives development tasks through plan -> implement -> review -> deploy -> verify
as Temporal workflows, and keeps the swarm healthy in the background.

Components:
- Task Development Orchestrator: per-task state machine with approval gate,
  bounded self-correction and cooperative cancellation
- Self-Heal Loop: perpetual health polling, escalation and daily maintenance,
  checkpointed through continue-as-new
- Health Supervisor: isolated dependency checks with a global kill switch
- Rollback & Fix-Chain Controller: git revert of bad deploys, fix task spawning
  and loop detection through a shared atomic counter
- Liveness Registry: TTL heartbeats (90s) with durable history
- SCM Provider Abstraction: GitHub, GitLab and Azure DevOps behind one interface
- Worker: Temporal worker hosting both workflows and their activities,
  with heartbeats and the single self-heal guarantee
"""

__version__ = "0.1.0"
