from __future__ import annotations

import json
import threading
from pathlib import Path

import allure

from helpers import make_graph
from parallel_orchestrator.orchestrator.task_queue import (
    QUEUE_FILE_NAME,
    QueuedTask,
    QueuedTaskStatus,
    SharedTaskQueue,
)

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Shared Task Queue"),
]


def _queue(tmp_path: Path) -> SharedTaskQueue:
    return SharedTaskQueue(tmp_path / "state", retry_delay_seconds=0.01)


def test_claim_follows_dependencies(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_from_graph(make_graph(("A", ()), ("B", ("A",)), ("C", ())))

    first = queue.claim_next_task("w1")
    second = queue.claim_next_task("w2")

    assert (first.id, first.worker_id) == ("A", "w1")
    assert second.id == "C"
    assert queue.claim_next_task("w3") is None

    assert queue.complete_task("A", files_changed=["src/a.py"])
    third = queue.claim_next_task("w3")
    assert third.id == "B"
    assert third.status == QueuedTaskStatus.IN_PROGRESS
    assert third.claimed_at is not None


def test_complete_fail_and_release_update_status(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_queue(
        [QueuedTask(id="A", title="first"), QueuedTask(id="B", title="second")],
    )
    queue.claim_next_task("w1")
    queue.claim_next_task("w2")

    assert queue.fail_task("B", "boom")
    assert queue.release_task("A")
    assert not queue.complete_task("missing")

    tasks = {task.id: task for task in queue.list_tasks()}
    assert tasks["A"].status == QueuedTaskStatus.PENDING
    assert tasks["A"].worker_id is None
    assert tasks["B"].status == QueuedTaskStatus.FAILED
    assert tasks["B"].error == "boom"
    status = queue.get_queue_status()
    assert (status.pending, status.in_progress, status.done, status.failed) == (1, 0, 0, 1)
    assert status.total == 2
    assert not queue.is_queue_complete()

    queue.claim_next_task("w1")
    queue.complete_task("A", files_changed=["README.md"])
    assert queue.is_queue_complete()
    assert {task.id: task.files_changed for task in queue.list_tasks()}["A"] == ["README.md"]


def test_failure_cascades_to_pending_dependents(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_from_graph(
        make_graph(("A", ()), ("B", ("A",)), ("C", ("B",)), ("D", ())),
    )
    queue.claim_next_task("w1")

    assert queue.fail_task("A", "Exit code 3")

    tasks = {task.id: task for task in queue.list_tasks()}
    assert tasks["A"].error == "Exit code 3"
    assert tasks["B"].status == QueuedTaskStatus.FAILED
    assert tasks["B"].error == "dependency A failed"
    assert tasks["C"].error == "dependency B failed"
    assert tasks["D"].status == QueuedTaskStatus.PENDING
    assert queue.claim_next_task("w1").id == "D"
    queue.complete_task("D")
    assert queue.is_queue_complete()
    assert not queue.fail_task("missing", "boom")


def test_initialize_replaces_previous_queue(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_queue([QueuedTask(id="old", title="old")])
    queue.claim_next_task("w1")

    queue.initialize_queue(
        [QueuedTask(id="new", title="new", status=QueuedTaskStatus.DONE, worker_id="w9")],
    )

    (task,) = queue.list_tasks()
    assert task.id == "new"
    assert task.status == QueuedTaskStatus.PENDING
    assert task.worker_id is None


def test_concurrent_claims_hand_out_each_task_once(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_queue([QueuedTask(id=f"T{index}", title="t") for index in range(12)])
    claimed: list[str] = []
    guard = threading.Lock()

    def _worker(worker_id: str) -> None:
        while True:
            task = queue.claim_next_task(worker_id)
            if task is None:
                return
            with guard:
                claimed.append(task.id)

    threads = [threading.Thread(target=_worker, args=(f"w{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(claimed) == sorted(f"T{index}" for index in range(12))


def test_missing_or_corrupt_queue_reads_as_empty(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    assert queue.list_tasks() == []
    assert queue.is_queue_complete()

    queue.path.parent.mkdir(parents=True)
    queue.path.write_text("{broken", "utf-8")

    assert queue.list_tasks() == []
    assert queue.claim_next_task("w1") is None


def test_queue_file_is_plain_json(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    queue.initialize_queue([QueuedTask(id="A", title="first", depends_on=["Z"])])

    payload = json.loads((tmp_path / "state" / QUEUE_FILE_NAME).read_text("utf-8"))

    assert payload["tasks"][0]["id"] == "A"
    assert payload["tasks"][0]["status"] == "pending"
    assert payload["tasks"][0]["depends_on"] == ["Z"]
    assert "updated_at" in payload
