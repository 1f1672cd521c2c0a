from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, T1, FixedClock, sequential_ids
from tasksync.errors import StorageError, StoreUnavailableError
from tasksync.models import make_task
from tasksync.reconciler import (
    OutcomeKind,
    Reconciler,
    ReconcileResult,
    RecordOutcome,
    compare_timestamps,
    decide,
    is_blank_id,
)
from tasksync.repositories import InMemoryRepository


class FaultyRepository(InMemoryRepository):
    """In-memory store that raises StorageError for chosen ids."""

    def __init__(self, fail_get=(), fail_upsert=()):
        super().__init__()
        self.fail_get = set(fail_get)
        self.fail_upsert = set(fail_upsert)

    def get(self, task_id):
        if task_id in self.fail_get:
            raise StorageError("read timed out")
        return super().get(task_id)

    def upsert(self, task):
        if task["id"] in self.fail_upsert:
            raise StorageError("disk full")
        return super().upsert(task)


class UnreachableRepository(InMemoryRepository):
    @contextmanager
    def transaction(self):
        raise StoreUnavailableError("connection refused")
        yield  # pragma: no cover


def make_reconciler(repo, clock=None, ids=None):
    return Reconciler(repo, clock=clock or FixedClock(), id_factory=ids or sequential_ids())


class TestCompareAndDecide:
    def test_compare_timestamps(self):
        later = T1 + timedelta(seconds=10)
        assert compare_timestamps(later, T1) == 1
        assert compare_timestamps(T1, later) == -1
        assert compare_timestamps(T1, T1) == 0

    def test_missing_timestamp_is_earliest(self):
        assert compare_timestamps(None, T1) == -1
        assert compare_timestamps(T1, None) == 1
        assert compare_timestamps(None, None) == 0

    def test_is_blank_id(self):
        assert is_blank_id(None)
        assert is_blank_id("")
        assert is_blank_id("   ")
        assert not is_blank_id("A")

    def test_decide_client_newer_overwrites_whole_record(self):
        server = make_task("A", title="old", description="keep?", completed=False, updated_at=T1)
        client = make_task("A", title=None, description=None, completed=True, updated_at=T1 + timedelta(seconds=10))

        outcome = decide(client, server)

        assert outcome.kind is OutcomeKind.MERGED
        assert outcome.record == make_task(
            "A", title=None, description=None, completed=True, updated_at=T1 + timedelta(seconds=10)
        )
        # inputs untouched
        assert server["title"] == "old"

    def test_decide_server_newer_conflicts(self):
        server = make_task("A", title="server", updated_at=T1 + timedelta(seconds=5))
        client = make_task("A", title="client", updated_at=T1)

        outcome = decide(client, server)

        assert outcome.kind is OutcomeKind.CONFLICT
        assert outcome.record is None
        assert outcome.conflict.id == "A"
        assert outcome.conflict.server == server
        assert outcome.conflict.client == client

    def test_naive_timestamps_compare_as_utc(self):
        naive = datetime(2025, 1, 1, 12, 0, 10)
        assert compare_timestamps(naive, T1) == 1
        assert compare_timestamps(T1, datetime(2025, 1, 1, 12, 0, 0)) == 0
        assert compare_timestamps(naive, None) == 1

    def test_decide_conflict_reports_client_timestamp_in_utc(self):
        server = make_task("A", updated_at=T1 + timedelta(seconds=5))
        client = make_task("A", updated_at=datetime(2025, 1, 1, 12, 0, 0))

        outcome = decide(client, server)

        assert outcome.kind is OutcomeKind.CONFLICT
        assert outcome.conflict.client["updated_at"] == T1
        assert outcome.conflict.client["updated_at"].tzinfo is not None

    def test_decide_equal_returns_server_version(self):
        server = make_task("A", title="server", updated_at=T1)
        client = make_task("A", title="client", updated_at=T1)

        outcome = decide(client, server)

        assert outcome.kind is OutcomeKind.UNCHANGED
        assert outcome.record["title"] == "server"


class TestReconcileResult:
    def test_fold_keeps_order_per_sequence(self):
        a = make_task("A", updated_at=T1)
        b = make_task("B", updated_at=T1)
        c = make_task("C", updated_at=T1)
        outcomes = [
            RecordOutcome.created(a),
            RecordOutcome.failed("boom"),
            RecordOutcome.conflicted(server=b, client=b),
            RecordOutcome.unchanged(c),
        ]

        result = ReconcileResult.fold(outcomes)

        assert [t["id"] for t in result.synced] == ["A", "C"]
        assert [x.id for x in result.conflicts] == ["B"]
        assert result.errors == ("boom",)

    def test_add_returns_new_result(self):
        empty = ReconcileResult()
        added = empty.add(RecordOutcome.created(make_task("A")))
        assert empty.synced == ()
        assert len(added.synced) == 1

    def test_fold_large_batch_keeps_order_and_counts(self):
        outcomes = []
        for i in range(5000):
            task = make_task(f"t{i}", updated_at=T1)
            if i % 10 == 0:
                outcomes.append(RecordOutcome.conflicted(server=task, client=task))
            elif i % 10 == 1:
                outcomes.append(RecordOutcome.failed(f"err {i}"))
            else:
                outcomes.append(RecordOutcome.merged(task))

        result = ReconcileResult.fold(outcomes)

        assert len(result.synced) == 4000
        assert len(result.conflicts) == 500
        assert len(result.errors) == 500
        assert result.synced[0]["id"] == "t2"
        assert result.synced[-1]["id"] == "t4999"
        assert [c.id for c in result.conflicts[:3]] == ["t0", "t10", "t20"]
        assert result.errors[-1] == "err 4991"

    def test_add_extends_existing_result(self):
        start = ReconcileResult.fold([RecordOutcome.created(make_task("A")), RecordOutcome.failed("x")])
        added = start.add(RecordOutcome.created(make_task("B")))
        assert [t["id"] for t in added.synced] == ["A", "B"]
        assert added.errors == ("x",)
        assert [t["id"] for t in start.synced] == ["A"]


class TestReconciler:
    def test_empty_batch(self, repo):
        result = make_reconciler(repo).reconcile([])
        assert result == ReconcileResult()
        assert repo.list_all() == []

    def test_blank_ids_get_generated_id_and_now(self, repo):
        clock = FixedClock()
        batch = [make_task("", title="one"), make_task("  ", title="two", updated_at=T1)]

        result = make_reconciler(repo, clock=clock).reconcile(batch)

        assert [t["id"] for t in result.synced] == ["gen-1", "gen-2"]
        assert all(t["updated_at"] == NOW for t in result.synced)
        assert repo.get("gen-1")["title"] == "one"
        assert repo.get("gen-2")["title"] == "two"
        assert result.conflicts == () and result.errors == ()

    def test_unknown_id_is_created_verbatim(self, repo):
        batch = [
            make_task("client-made", title="keeps ts", updated_at=T1),
            make_task("no-ts", title="gets now"),
        ]

        result = make_reconciler(repo).reconcile(batch)

        assert [t["id"] for t in result.synced] == ["client-made", "no-ts"]
        assert repo.get("client-made")["updated_at"] == T1
        assert repo.get("no-ts")["updated_at"] == NOW

    def test_client_newer_updates_store(self, repo):
        repo.upsert(make_task("A", title="old", description="d", completed=False, updated_at=T1))
        later = T1 + timedelta(seconds=10)

        result = make_reconciler(repo).reconcile(
            [make_task("A", title="new", description=None, completed=True, updated_at=later)]
        )

        stored = repo.get("A")
        assert stored == make_task("A", title="new", description=None, completed=True, updated_at=later)
        assert result.synced == (stored,)

    def test_server_newer_leaves_store_and_reports_both_versions(self, repo):
        server = repo.upsert(make_task("A", title="server", completed=True, updated_at=T1 + timedelta(seconds=5)))
        client = make_task("A", title="client", completed=False, updated_at=T1)

        result = make_reconciler(repo).reconcile([client])

        assert repo.get("A") == server
        assert result.synced == ()
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.id == "A"
        assert conflict.server == server
        assert conflict.client == client

    def test_client_without_timestamp_loses_to_server(self, repo):
        repo.upsert(make_task("A", title="server", updated_at=T1))
        result = make_reconciler(repo).reconcile([make_task("A", title="client")])
        assert len(result.conflicts) == 1
        assert repo.get("A")["title"] == "server"

    def test_server_without_timestamp_loses_to_client(self, repo):
        repo.upsert(make_task("A", title="server"))
        result = make_reconciler(repo).reconcile([make_task("A", title="client", updated_at=T1)])
        assert result.synced[0]["title"] == "client"
        assert repo.get("A")["updated_at"] == T1

    def test_naive_client_newer_than_aware_server_merges(self, repo):
        repo.upsert(make_task("A", title="server", updated_at=T1))
        naive = datetime(2025, 1, 1, 12, 0, 10)

        result = make_reconciler(repo).reconcile([make_task("A", title="client", updated_at=naive)])

        assert result.errors == ()
        assert [t["title"] for t in result.synced] == ["client"]
        stored = repo.get("A")
        assert stored["updated_at"] == datetime(2025, 1, 1, 12, 0, 10, tzinfo=timezone.utc)
        assert stored["updated_at"].tzinfo is not None

    def test_naive_client_against_server_without_timestamp(self, repo):
        repo.upsert(make_task("A", title="server"))

        result = make_reconciler(repo).reconcile(
            [make_task("A", title="client", updated_at=datetime(2025, 1, 1, 12, 0, 0))]
        )

        assert result.errors == ()
        assert repo.get("A")["updated_at"] == T1

    def test_naive_client_older_than_server_conflicts(self, repo):
        repo.upsert(make_task("A", title="server", updated_at=T1 + timedelta(seconds=5)))

        result = make_reconciler(repo).reconcile(
            [make_task("A", title="client", updated_at=datetime(2025, 1, 1, 12, 0, 0))]
        )

        assert result.errors == ()
        assert result.conflicts[0].client["updated_at"] == T1
        assert repo.get("A")["title"] == "server"

    def test_record_without_id_key_is_created(self, repo):
        result = make_reconciler(repo).reconcile([{"title": "x"}, make_task("B", updated_at=T1)])

        assert result.errors == ()
        assert [t["id"] for t in result.synced] == ["gen-1", "B"]
        created = repo.get("gen-1")
        assert created["title"] == "x"
        assert created["completed"] is False
        assert created["description"] is None
        assert created["updated_at"] == NOW

    def test_large_batch_keeps_order_and_counts(self, repo):
        batch = [make_task(f"t{i}", updated_at=T1) for i in range(5000)]
        make_reconciler(repo).reconcile(batch)

        result = make_reconciler(repo).reconcile(batch)

        assert len(result.synced) == 5000
        assert [t["id"] for t in result.synced[:3]] == ["t0", "t1", "t2"]
        assert result.synced[-1]["id"] == "t4999"
        assert result.conflicts == () and result.errors == ()

    @pytest.mark.parametrize("ts", [T1, None])
    def test_equal_timestamps_are_a_noop(self, repo, ts):
        server = repo.upsert(make_task("A", title="server", updated_at=ts))

        result = make_reconciler(repo).reconcile([make_task("A", title="client", completed=True, updated_at=ts)])

        assert repo.get("A") == server
        assert result.synced == (server,)
        assert result.conflicts == ()

    def test_mixed_batch_scenario(self, repo):
        repo.upsert(make_task("A", completed=False, updated_at=T1))
        later = T1 + timedelta(seconds=10)

        result = make_reconciler(repo).reconcile(
            [make_task("A", completed=True, updated_at=later), make_task(title="new")]
        )

        assert result.synced[0]["id"] == "A"
        assert result.synced[0]["completed"] is True
        assert result.synced[0]["updated_at"] == later
        assert result.synced[1]["id"] == "gen-1"
        assert result.synced[1]["title"] == "new"
        assert result.synced[1]["updated_at"] == NOW
        assert result.conflicts == ()
        assert result.errors == ()

    def test_rerunning_synced_output_is_idempotent(self, repo):
        repo.upsert(make_task("A", title="a", updated_at=T1))
        repo.upsert(make_task("B", title="b", updated_at=T1 + timedelta(seconds=1)))
        reconciler = make_reconciler(repo)
        first = reconciler.reconcile(
            [
                make_task("A", title="a2", updated_at=T1 + timedelta(seconds=3)),
                make_task("B", title="b", updated_at=T1 + timedelta(seconds=1)),
                make_task(title="c"),
            ]
        )
        before = repo.list_all()

        second = reconciler.reconcile(list(first.synced))

        assert second.synced == first.synced
        assert second.conflicts == ()
        assert second.errors == ()
        assert repo.list_all() == before

    def test_failure_is_isolated_to_its_record(self):
        repo = FaultyRepository(fail_upsert={"B"})
        repo.upsert(make_task("C", title="server", updated_at=T1 + timedelta(seconds=5)))
        batch = [
            make_task("A", title="a", updated_at=T1),
            make_task("B", title="b", updated_at=T1),
            make_task("C", title="client", updated_at=T1),
            make_task("D", title="d"),
        ]

        result = make_reconciler(repo).reconcile(batch)

        assert result.errors == ("Failed to sync task B: disk full",)
        assert [t["id"] for t in result.synced] == ["A", "D"]
        assert [c.id for c in result.conflicts] == ["C"]
        assert repo.get("B") is None
        assert repo.get("A") is not None and repo.get("D") is not None

    def test_lookup_failure_is_reported(self):
        repo = FaultyRepository(fail_get={"A"})
        result = make_reconciler(repo).reconcile([make_task("A", updated_at=T1), make_task("B", updated_at=T1)])
        assert result.errors == ("Failed to sync task A: read timed out",)
        assert [t["id"] for t in result.synced] == ["B"]

    def test_failure_on_new_record_names_generated_id(self):
        repo = FaultyRepository(fail_upsert={"gen-1"})
        result = make_reconciler(repo).reconcile([make_task(title="x")])
        assert result.errors == ("Failed to sync task gen-1: disk full",)
        assert result.synced == ()

    def test_every_record_failing_still_returns_result(self):
        repo = FaultyRepository(fail_upsert={"A", "B"})
        result = make_reconciler(repo).reconcile([make_task("A"), make_task("B")])
        assert len(result.errors) == 2
        assert result.synced == ()

    def test_later_records_see_earlier_writes(self, repo):
        later = T1 + timedelta(seconds=10)
        result = make_reconciler(repo).reconcile(
            [
                make_task("A", title="first", updated_at=later),
                make_task("A", title="stale", updated_at=T1),
                make_task("A", title="same", updated_at=later),
            ]
        )

        assert [t["title"] for t in result.synced] == ["first", "first"]
        assert [c.client["title"] for c in result.conflicts] == ["stale"]
        assert repo.get("A")["title"] == "first"

    def test_input_records_are_not_mutated(self, repo):
        record = make_task("", title="new")
        make_reconciler(repo).reconcile([record])
        assert record == make_task("", title="new")

    def test_store_unavailable_aborts_whole_batch(self):
        repo = UnreachableRepository()
        with pytest.raises(StoreUnavailableError):
            make_reconciler(repo).reconcile([make_task(title="x")])
        assert repo.list_all() == []

    def test_default_clock_and_ids(self, repo):
        result = Reconciler(repo).reconcile([make_task(title="x")])
        created = result.synced[0]
        assert created["id"]
        assert created["updated_at"].tzinfo is not None


class TestInMemoryTransaction:
    def test_rollback_on_error(self, repo):
        repo.upsert(make_task("A", title="before", updated_at=T1))
        with pytest.raises(RuntimeError):
            with repo.transaction():
                repo.upsert(make_task("A", title="after", updated_at=T1))
                repo.upsert(make_task("B", updated_at=T1))
                raise RuntimeError("crash")
        assert repo.get("A")["title"] == "before"
        assert repo.get("B") is None

    def test_nested_transaction_commits_with_outer(self, repo):
        with repo.transaction():
            with repo.transaction():
                repo.upsert(make_task("A"))
        assert repo.exists("A")
