import sqlite3
import threading
import time
from datetime import timedelta

import pytest

from groupcast.config import WorkerConfig
from groupcast.db import connect_db
from groupcast.models import (
    FAILED, PENDING, PROCESSING, SENT, DirectoryUnavailable, Group,
    TargetingRule, TextMessage,
)
from groupcast.repository import (
    enqueue_batch, enqueue_job, get_job, list_failures, list_jobs, try_claim,
)
from groupcast.worker import Scheduler

from conftest import NOW, FakeDirectory, FakeProvider


@pytest.fixture
def make_scheduler(db_path):
    created = []

    def _make(provider=None, directory=None, sleeps=None, clock=None, **cfg):
        cfg.setdefault("rate_limit", 2.0)
        cfg.setdefault("worker_pool_size", 2)
        sched = Scheduler(
            WorkerConfig(db_path=db_path, **cfg),
            provider=provider or FakeProvider(),
            directory=directory or FakeDirectory(),
            clock=clock or (lambda: NOW),
            sleep=(sleeps.append if sleeps is not None else lambda s: None),
        )
        created.append(sched)
        return sched

    yield _make
    for s in created:
        s.shutdown()


def add_job(conn, **kw):
    kw.setdefault("message", TextMessage(body="hi"))
    kw.setdefault("targeting", TargetingRule.explicit(["G1", "G2"]))
    kw.setdefault("due_at", NOW)
    return enqueue_job(conn, instance="acme", **kw)


def test_all_success_scenario(conn, make_scheduler, groups):
    job_id = add_job(conn)
    provider = FakeProvider()
    sleeps = []
    sched = make_scheduler(provider, FakeDirectory(groups), sleeps)

    assert sched.run_once(wait=True) == 1

    assert provider.recipients == ["G2", "G1"]
    assert sleeps == [2.0]
    job = get_job(conn, job_id)
    assert job.status == SENT
    assert job.result_summary == "2/2 sent"
    assert job.sent_at == NOW
    assert list_failures(conn, job_id) == []


def test_partial_failure_scenario(conn, make_scheduler, groups):
    job_id = add_job(conn)
    sched = make_scheduler(FakeProvider(failing={"G1"}), FakeDirectory(groups))

    sched.run_once(wait=True)

    job = get_job(conn, job_id)
    assert job.status == FAILED
    assert job.result_summary == "1/2 sent, 1 failed"
    failures = list_failures(conn, job_id)
    assert [f["recipient_id"] for f in failures] == ["G1"]


def test_partial_failure_counts(conn, make_scheduler):
    directory = FakeDirectory([Group(f"G{i}", size=i) for i in range(1, 11)])
    failing = {"G2", "G5", "G9"}
    provider = FakeProvider(failing=failing)
    job_id = add_job(conn, targeting=TargetingRule(min_size=0))

    make_scheduler(provider, directory).run_once(wait=True)

    succeeded = [r for r in provider.recipients if r not in failing]
    assert len(provider.calls) == 10
    assert len(succeeded) == 7
    assert {f["recipient_id"] for f in list_failures(conn, job_id)} == failing
    assert get_job(conn, job_id).result_summary == "7/10 sent, 3 failed"


def test_groups_contacted_largest_first(conn, make_scheduler):
    sizes = [10, 50, 5, 200]
    directory = FakeDirectory([Group(f"S{s}", size=s) for s in sizes])
    provider = FakeProvider()
    add_job(conn, targeting=TargetingRule())

    make_scheduler(provider, directory).run_once(wait=True)

    assert provider.recipients == ["S200", "S50", "S10", "S5"]


def test_not_yet_due_job_is_left_alone(conn, make_scheduler, groups):
    job_id = add_job(conn, due_at=NOW + timedelta(seconds=1))
    provider = FakeProvider()

    assert make_scheduler(provider, FakeDirectory(groups)).run_once(wait=True) == 0
    assert provider.calls == []
    assert get_job(conn, job_id).status == PENDING


def test_job_claimed_elsewhere_is_skipped(conn, make_scheduler, groups):
    job_id = add_job(conn)
    sched = make_scheduler(FakeProvider(), FakeDirectory(groups))
    job = list_jobs(conn)[0]
    assert try_claim(conn, job_id)

    assert sched.claim(conn, job) is False


def test_directory_failure_fails_job_without_sending(conn, make_scheduler):
    job_id = add_job(conn)
    provider = FakeProvider()
    directory = FakeDirectory(error=DirectoryUnavailable("instance offline"))

    make_scheduler(provider, directory).run_once(wait=True)

    job = get_job(conn, job_id)
    assert job.status == FAILED
    assert job.result_summary.startswith("directory unavailable")
    assert provider.calls == []


def test_malformed_message_fails_before_lookup(conn, make_scheduler, groups):
    job_id = add_job(conn)
    # bypass enqueue validation to simulate a bad row
    conn.execute(
        "UPDATE jobs SET message=? WHERE id=?",
        ('{"kind": "poll", "question": "Lunch?", "options": ["yes"]}', job_id),
    )
    conn.commit()
    provider, directory = FakeProvider(), FakeDirectory(groups)

    make_scheduler(provider, directory).run_once(wait=True)

    job = get_job(conn, job_id)
    assert job.status == FAILED
    assert job.result_summary.startswith("invalid message")
    assert directory.lookups == 0
    assert provider.calls == []


def test_zero_recipients_marks_sent(conn, make_scheduler, groups):
    job_id = add_job(conn, targeting=TargetingRule(min_size=1000))
    make_scheduler(FakeProvider(), FakeDirectory(groups)).run_once(wait=True)
    job = get_job(conn, job_id)
    assert (job.status, job.result_summary) == (SENT, "0 recipients")


def test_recurring_job_spawns_next_occurrence(conn, make_scheduler, groups):
    job_id = add_job(conn, recurrence="daily")
    make_scheduler(FakeProvider(), FakeDirectory(groups)).run_once(wait=True)

    follow_up = [j for j in list_jobs(conn) if j.parent_id == job_id]
    assert len(follow_up) == 1
    assert follow_up[0].due_at == NOW + timedelta(days=1)
    assert follow_up[0].status == PENDING


def test_recurring_job_without_successes_does_not_repeat(conn, make_scheduler, groups):
    job_id = add_job(conn, recurrence="daily")
    make_scheduler(FakeProvider(failing={"G1", "G2"}), FakeDirectory(groups)).run_once(wait=True)
    assert [j for j in list_jobs(conn) if j.parent_id == job_id] == []


def test_batch_chunks_run_in_order(conn, make_scheduler, groups):
    enqueue_batch(
        conn, instance="acme", message=TextMessage(body="one\ntwo\nthree", split_by_lines=True),
        targeting=TargetingRule.explicit(["G1"]), due_at=NOW,
    )
    provider = FakeProvider()

    assert make_scheduler(provider, FakeDirectory(groups), worker_pool_size=1).run_once(wait=True) == 3
    assert [c[2].body for c in provider.calls] == ["one", "two", "three"]
    assert {j.status for j in list_jobs(conn)} == {SENT}


def test_pool_bound_leaves_extra_jobs_pending(conn, make_scheduler, groups):
    ids = [add_job(conn) for _ in range(3)]
    sched = make_scheduler(FakeProvider(), FakeDirectory(groups), worker_pool_size=2)

    assert sched.run_once(wait=True) == 2
    assert [get_job(conn, i).status for i in ids] == [SENT, SENT, PENDING]


def test_stuck_jobs_are_requeued_when_timeout_set(conn, make_scheduler, groups):
    job_id = add_job(conn)
    try_claim(conn, job_id, now=NOW - timedelta(hours=1))
    sched = make_scheduler(FakeProvider(), FakeDirectory(groups), stuck_timeout=600)

    assert sched.run_once(wait=True) == 1
    assert get_job(conn, job_id).status == SENT


def test_stuck_jobs_stay_without_timeout(conn, make_scheduler, groups):
    job_id = add_job(conn)
    try_claim(conn, job_id, now=NOW - timedelta(hours=1))
    make_scheduler(FakeProvider(), FakeDirectory(groups)).run_once(wait=True)
    assert get_job(conn, job_id).status == PROCESSING


def test_outcome_write_failure_leaves_job_processing(db_path, conn, groups, caplog):
    job_id = add_job(conn)
    try_claim(conn, job_id)
    job = get_job(conn, job_id)

    class ReadOnly:
        def __init__(self, inner):
            self._inner = inner

        def __enter__(self):
            return self._inner.__enter__()

        def __exit__(self, *exc):
            return self._inner.__exit__(*exc)

        def execute(self, sql, *args):
            if sql.lstrip().upper().startswith("UPDATE"):
                raise sqlite3.OperationalError("disk I/O error")
            return self._inner.execute(sql, *args)

    sched = Scheduler(
        WorkerConfig(db_path=db_path, rate_limit=0),
        provider=FakeProvider(), directory=FakeDirectory(groups), clock=lambda: NOW,
    )
    try:
        other = connect_db(db_path)
        result = sched.process(ReadOnly(other), job)
        other.close()
    finally:
        sched.shutdown()

    assert result.succeeded == 2
    assert get_job(conn, job_id).status == PROCESSING
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


class BlockingProvider(FakeProvider):
    """Holds every send until `release` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def send(self, instance, recipient_id, message, mention_everyone=False):
        self.entered.set()
        assert self.release.wait(5)
        super().send(instance, recipient_id, message, mention_everyone)


def test_sweep_spares_jobs_still_running_here(conn, make_scheduler, groups):
    job_id = add_job(conn, targeting=TargetingRule.explicit(["G1"]))
    provider = BlockingProvider()
    now = [NOW]
    sched = make_scheduler(provider, FakeDirectory(groups), clock=lambda: now[0], stuck_timeout=60)

    assert sched.run_once() == 1
    assert provider.entered.wait(5)
    now[0] = NOW + timedelta(seconds=120)

    assert sched.run_once() == 0
    assert get_job(conn, job_id).status == PROCESSING

    provider.release.set()
    sched.shutdown()
    assert provider.recipients == ["G1"]
    assert get_job(conn, job_id).status == SENT


def test_run_forever_backs_off_and_resets(db_path, groups):
    delays = []
    attempts = []

    def flaky_connect():
        attempts.append(1)
        if len(attempts) <= 4:
            raise sqlite3.OperationalError("unable to open database file")
        return connect_db(db_path)

    def record_wait(delay):
        delays.append(delay)
        if len(delays) == 5:
            sched.stop()

    sched = Scheduler(
        WorkerConfig(db_path=db_path, poll_interval=5, max_backoff=60),
        connect=flaky_connect, provider=FakeProvider(), directory=FakeDirectory(groups),
        clock=lambda: NOW, wait=record_wait,
    )
    sched.run_forever()

    assert delays == [10, 20, 40, 60, 5]


def test_stop_interrupts_the_poll_wait(db_path, groups):
    sched = Scheduler(
        WorkerConfig(db_path=db_path, poll_interval=30),
        provider=FakeProvider(), directory=FakeDirectory(groups), clock=lambda: NOW,
    )
    runner = threading.Thread(target=sched.run_forever)
    runner.start()
    time.sleep(0.2)

    sched.stop()
    runner.join(timeout=2)
    assert not runner.is_alive()


def test_end_to_end_against_http_provider(conn, make_scheduler):
    import json

    import httpx

    from groupcast.provider import CachedDirectory, EvolutionClient

    sent = []

    def handler(request):
        if request.url.path == "/group/fetchAllGroups/acme":
            return httpx.Response(200, json=[
                {"id": "G1", "subject": "Alpha", "size": 5},
                {"id": "G2", "subject": "Beta", "size": 9},
                {"id": "G3", "subject": "Gamma", "size": 30},
            ])
        body = json.loads(request.content)
        sent.append(body["number"])
        if body["number"] == "G1":
            return httpx.Response(500, text="group not found")
        return httpx.Response(201, json={"status": "PENDING"})

    client = EvolutionClient("http://evo.local", "k", transport=httpx.MockTransport(handler))
    job_id = add_job(conn, targeting=TargetingRule.explicit(["G1", "G2"]))

    make_scheduler(client, CachedDirectory(client.list_groups)).run_once(wait=True)
    client.close()

    assert sent == ["G2", "G1"]
    job = get_job(conn, job_id)
    assert (job.status, job.result_summary) == (FAILED, "1/2 sent, 1 failed")
    assert "API Error 500" in list_failures(conn, job_id)[0]["error"]
