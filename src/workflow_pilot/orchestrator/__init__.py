"""Orchestrator core for declarative, LLM-backed workflows.

Why not Prefect / Temporal / Airflow?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not scheduling DAGs, it is the boundary between a
step program and agents whose answers may need a human before the run can
continue.  Responsibilities no generic workflow engine covers out of the box:

- Resume from the first unfinished step, never replaying a completed one,
  with per-run JSON snapshots that survive a crash mid-write.
- Confidence-gated decisions that park a single run on an escalation and
  resume it from the same step once a human answers.
- A global executor capacity shared across runs, so concurrent workflows
  never exceed a provider's hard rate limit.
- Branch-scoped git worktrees for parallel units of work.

A durable-execution service would add a server and a database for what is a
single-machine, file-and-SQLite tool, and would still need all of the above
as custom activity code.  An explicit interpreter loop over a small step
registry is the right trade-off for this scope.
"""
