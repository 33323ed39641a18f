from __future__ import annotations

import threading
import time
from pathlib import Path

import allure

from helpers import make_graph, read_records, stub_command
from parallel_orchestrator.config import WorkerSettings
from parallel_orchestrator.orchestrator.coordinator import WorkerCoordinator
from parallel_orchestrator.orchestrator.queue_worker import QueueWorker, QueueWorkSummary
from parallel_orchestrator.orchestrator.task_queue import QueuedTaskStatus, SharedTaskQueue
from parallel_orchestrator.orchestrator.workspace import SharedWorkspaceProvider

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Queue Workers"),
]

DIAMOND = (("A", ()), ("B", ("A",)), ("C", ("A",)), ("D", ("B", "C")))


def _queue(tmp_path: Path) -> SharedTaskQueue:
    return SharedTaskQueue(tmp_path / "state", retry_delay_seconds=0.01)


def _worker(tmp_path: Path, queue: SharedTaskQueue, worker_id: str, *args: str) -> QueueWorker:
    settings = WorkerSettings(
        command_template=stub_command(*args),
        sync_before_work=False,
        graceful_shutdown_seconds=1,
    )
    coordinator = WorkerCoordinator(
        tmp_path,
        settings,
        SharedWorkspaceProvider(tmp_path),
        state_dir=tmp_path / "state",
    )
    return QueueWorker(queue, coordinator, worker_id=worker_id, poll_interval_seconds=0.05)


def _wait_for(predicate, timeout: float = 30.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition not reached in time")


def test_two_workers_share_a_diamond_without_running_any_task_twice(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_from_graph(make_graph(*DIAMOND))
    record = tmp_path / "record.txt"
    summaries: list[QueueWorkSummary] = []
    workers = [
        _worker(tmp_path, queue, name, "--record", str(record), "--sleep", "0.2")
        for name in ("w1", "w2")
    ]

    threads = [
        threading.Thread(target=lambda worker=worker: summaries.append(worker.run_loop()))
        for worker in workers
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert queue.is_queue_complete()
    assert {task.status for task in queue.list_tasks()} == {QueuedTaskStatus.DONE}
    records = read_records(record)
    assert sorted(line for line in records if line.startswith("start")) == [
        "start A",
        "start B",
        "start C",
        "start D",
    ]
    assert records.index("start D") > records.index("end B")
    assert records.index("start D") > records.index("end C")
    assert sorted(task for summary in summaries for task in summary.completed) == [
        "A",
        "B",
        "C",
        "D",
    ]


def test_failed_task_fails_its_dependents_and_the_worker_exits(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_from_graph(make_graph(*DIAMOND, ("E", ())))

    summary = _worker(tmp_path, queue, "w1", "--fail", "B").run_loop()

    assert summary.completed == ["A", "C", "E"]
    assert summary.failed == {"B": "Exit code 3: task B failed on purpose"}
    assert summary.processed == 4
    tasks = {task.id: task for task in queue.list_tasks()}
    assert tasks["D"].status == QueuedTaskStatus.FAILED
    assert tasks["D"].error == "dependency B failed"
    assert queue.is_queue_complete()


def test_max_tasks_stops_early(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_from_graph(make_graph(("A", ()), ("B", ())))

    summary = _worker(tmp_path, queue, "w1").run_loop(max_tasks=1)

    assert summary.completed == ["A"]
    assert queue.get_queue_status().pending == 1


def test_unclaimable_tasks_end_the_loop_with_work_left(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_from_graph(make_graph(("A", ("B",)), ("B", ("A",))))

    summary = _worker(tmp_path, queue, "w1").run_loop()

    assert summary.processed == 0
    assert queue.get_queue_status().pending == 2


def test_stop_kills_the_running_task_and_releases_it(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_from_graph(make_graph(("A", ())))
    record = tmp_path / "record.txt"
    worker = _worker(tmp_path, queue, "w1", "--record", str(record), "--hang", "A")
    summaries: list[QueueWorkSummary] = []
    thread = threading.Thread(target=lambda: summaries.append(worker.run_loop()))
    thread.start()

    _wait_for(lambda: read_records(record) == ["start A"])
    worker.request_stop()
    thread.join(timeout=30)

    (summary,) = summaries
    assert summary.interrupted
    assert summary.released == ["A"]
    assert summary.processed == 0
    (task,) = queue.list_tasks()
    assert task.status == QueuedTaskStatus.PENDING
    assert task.worker_id is None
