"""Task/job control plane for pull-based worker agents.

A task becomes a fixed code -> test -> review -> release DAG of jobs. The
repository (SQLite via SQLModel) is the only system of record: the tick loop
plans and dispatches through it, and workers claim jobs and report results
through it. Concurrency safety comes from ``BEGIN IMMEDIATE`` transactions and
conditional status updates, not from in-process locks.
"""
