from __future__ import annotations

from pathlib import Path
import sqlite3
import threading

import pytest

from prlander.state import StateStore, _parse_entry_row, _parse_task_row


def _store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "nested" / "state.db")


def _seed_task(store: StateStore, task_id: str, *, pr_number: int | None = 10) -> None:
    store.insert_task(
        task_id=task_id,
        project_id="web",
        title=f"Task {task_id}",
        column="in_review",
        pr_number=pr_number,
        pr_branch=f"feat/{task_id}" if pr_number is not None else None,
        assignee_agent_id="worker-1",
    )


def test_insert_and_get_task_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    task = store.insert_task(
        task_id="t1",
        project_id="web",
        title="Add login",
        description="desc",
        column="in_review",
        pr_number=30,
        pr_branch="feat/login",
        assignee_agent_id="worker-1",
    )

    assert store.db_path.exists()
    assert task.column == "in_review"
    assert task.pipeline_attempt == 0
    assert task.retry_count == 0
    assert task.last_actioned_review_id is None
    assert task.created_at.endswith("Z")
    assert store.get_task("t1") == task
    assert store.get_task("missing") is None

    with pytest.raises(RuntimeError, match="already exists"):
        store.insert_task(task_id="t1", project_id="web", title="dup")


def test_list_tasks_filters(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_task(store, "t1")
    _seed_task(store, "t2", pr_number=None)
    store.insert_task(task_id="t3", project_id="api", title="Other", column="backlog")

    assert [task.task_id for task in store.list_tasks()] == ["t1", "t2", "t3"]
    assert [task.task_id for task in store.list_tasks(column="in_review")] == ["t1", "t2"]
    assert [task.task_id for task in store.list_tasks(with_pull_request=True)] == ["t1"]
    assert [task.task_id for task in store.list_tasks(project_id="api")] == ["t3"]


def test_update_task_applies_only_requested_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_task(store, "t1")

    updated = store.update_task(
        "t1",
        column="backlog",
        clear_assignee=True,
        clear_pull_request=True,
        increment_retry_count=True,
    )
    assert updated is not None
    assert updated.column == "backlog"
    assert updated.assignee_agent_id is None
    assert updated.pr_number is None
    assert updated.pr_branch is None
    assert updated.retry_count == 1
    assert updated.title == "Task t1"

    again = store.update_task(
        "t1",
        description="review cycle",
        completion_report="done",
        pipeline_attempt=2,
        last_actioned_review_id=99,
    )
    assert again is not None
    assert again.column == "backlog"
    assert again.description == "review cycle"
    assert again.completion_report == "done"
    assert again.pipeline_attempt == 2
    assert again.last_actioned_review_id == 99
    assert store.update_task("missing", column="done") is None


def test_review_watermark_survives_reopen(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_task(store, "t1")
    store.update_task("t1", last_actioned_review_id=123)

    reopened = StateStore(store.db_path)
    task = reopened.get_task("t1")
    assert task is not None
    assert task.last_actioned_review_id == 123


def test_delete_task(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_task(store, "t1")

    assert store.delete_task("t1") is True
    assert store.delete_task("t1") is False


def test_enqueue_is_idempotent_and_appends(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first, created_first = store.enqueue_merge_entry(
        task_id="t1", project_id="web", pr_number=10, pr_branch="feat/t1", base_branch="main"
    )
    again, created_again = store.enqueue_merge_entry(
        task_id="t1", project_id="web", pr_number=99, pr_branch="other", base_branch="dev"
    )
    second, _ = store.enqueue_merge_entry(
        task_id="t2", project_id="api", pr_number=11, pr_branch="feat/t2", base_branch="main"
    )

    assert created_first is True
    assert created_again is False
    assert again == first
    assert first.status == "queued"
    assert first.position == 1
    assert first.rebase_attempts == 0
    assert first.merged_at is None
    assert second.position == 2
    assert len(store.list_queue_entries()) == 2
    assert [entry.task_id for entry in store.list_queue_entries(project_id="api")] == ["t2"]


def test_concurrent_enqueue_of_same_task_creates_one_row(tmp_path: Path) -> None:
    store = _store(tmp_path)
    results: list[str] = []
    barrier = threading.Barrier(4)

    def approve() -> None:
        barrier.wait()
        entry, _ = store.enqueue_merge_entry(
            task_id="t1", project_id="web", pr_number=1, pr_branch="b", base_branch="main"
        )
        results.append(entry.entry_id)

    threads = [threading.Thread(target=approve) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(results)) == 1
    assert len(store.list_queue_entries()) == 1


def test_positions_are_not_renormalized_after_removal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for index in range(3):
        store.enqueue_merge_entry(
            task_id=f"t{index}",
            project_id="web",
            pr_number=index,
            pr_branch=f"b{index}",
            base_branch="main",
        )

    assert store.delete_queue_entry_for_task("t2") is True
    assert store.delete_queue_entry_for_task("t2") is False
    entry, _ = store.enqueue_merge_entry(
        task_id="t9", project_id="web", pr_number=9, pr_branch="b9", base_branch="main"
    )
    assert entry.position == 3
    assert [item.position for item in store.list_queue_entries()] == [1, 2, 3]


def test_append_position_never_drops_below_one(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first, _ = store.enqueue_merge_entry(
        task_id="t1", project_id="web", pr_number=1, pr_branch="b1", base_branch="main"
    )
    assert first.position == 1
    assert store.set_queue_entry_position(first.entry_id, -4) is True

    second, _ = store.enqueue_merge_entry(
        task_id="t2", project_id="web", pr_number=2, pr_branch="b2", base_branch="main"
    )

    assert second.position == 1
    assert [entry.task_id for entry in store.list_queue_entries()] == ["t1", "t2"]


def test_status_transitions_update_counters(tmp_path: Path) -> None:
    store = _store(tmp_path)
    entry, _ = store.enqueue_merge_entry(
        task_id="t1", project_id="web", pr_number=1, pr_branch="b", base_branch="main"
    )

    rebasing = store.set_queue_entry_status(entry.entry_id, "rebasing")
    assert rebasing is not None
    assert rebasing.rebase_attempts == 1
    assert store.active_queue_entry() == rebasing

    conflict = store.set_queue_entry_status(entry.entry_id, "conflict", error="boom")
    assert conflict is not None
    assert conflict.last_error == "boom"
    assert conflict.rebase_attempts == 1
    assert store.active_queue_entry() is None

    store.set_queue_entry_status(entry.entry_id, "rebasing")
    merged = store.set_queue_entry_status(entry.entry_id, "merged")
    assert merged is not None
    assert merged.rebase_attempts == 2
    assert merged.merged_at is not None
    assert merged.last_error == "boom"
    assert store.set_queue_entry_status("missing", "failed") is None


def test_next_queued_entry_orders_by_position(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first, _ = store.enqueue_merge_entry(
        task_id="t1", project_id="web", pr_number=1, pr_branch="b1", base_branch="main"
    )
    second, _ = store.enqueue_merge_entry(
        task_id="t2", project_id="web", pr_number=2, pr_branch="b2", base_branch="main"
    )

    assert store.next_queued_entry() == first
    assert store.set_queue_entry_position(second.entry_id, -5) is True
    assert store.set_queue_entry_position("missing", 1) is False
    next_entry = store.next_queued_entry()
    assert next_entry is not None
    assert next_entry.entry_id == second.entry_id
    assert [entry.task_id for entry in store.list_queue_entries()] == ["t2", "t1"]
    assert store.list_queue_entries(statuses=()) == ()
    assert len(store.list_queue_entries(statuses=("queued",))) == 2


def test_requeue_interrupted_entries_leaves_merging_alone(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ids: dict[str, str] = {}
    for task_id, status in (
        ("rebasing", "rebasing"),
        ("re_review", "re_review"),
        ("merging", "merging"),
        ("conflict", "conflict"),
    ):
        entry, _ = store.enqueue_merge_entry(
            task_id=task_id, project_id="web", pr_number=1, pr_branch="b", base_branch="main"
        )
        store.set_queue_entry_status(entry.entry_id, status)  # type: ignore[arg-type]
        ids[task_id] = entry.entry_id

    demoted = store.requeue_interrupted_entries()

    assert {entry.status for entry in demoted} == {"rebasing", "re_review"}
    statuses = {entry.task_id: entry.status for entry in store.list_queue_entries()}
    assert statuses == {
        "rebasing": "queued",
        "re_review": "queued",
        "merging": "merging",
        "conflict": "conflict",
    }
    assert store.requeue_interrupted_entries() == ()


def test_row_parsers_reject_corrupt_values(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _seed_task(store, "t1")
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("UPDATE tasks SET column_name = 'limbo' WHERE task_id = 't1'")
    with pytest.raises(RuntimeError, match="Unknown column_name value stored in tasks: limbo"):
        store.get_task("t1")

    with pytest.raises(RuntimeError, match="row width"):
        _parse_task_row(("t1",))
    with pytest.raises(RuntimeError, match="row width"):
        _parse_entry_row(("e1",))
