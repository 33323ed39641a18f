"""Dependency-aware scheduling of external worker processes.

Why not a thread pool / Celery / Ray?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Each unit of work here is a long-running external process that edits a
repository checkout, so the hard parts are not task dispatch:

- Dependency ordering with two admission policies (phased and ready-queue)
  plus failure cascading to dependents.
- One isolated git worktree per worker, tracked so crashed runs can be
  reconciled against what git and the filesystem still hold.
- Exactly one terminal event per worker, even when it is killed.
- A session record on disk that survives the orchestrator itself dying.

A broker would add an operational dependency to a single-machine CLI tool
and still leave all of the above as custom logic. The control loop in
``runner.py`` owns every scheduling decision on one thread; workers only
report back through the coordinator's event queue.
"""
