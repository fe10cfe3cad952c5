"""Tests for the evaluation run controller: lifecycle, exclusivity, pause/stop/reset."""

import asyncio
import random
import sys
import tempfile
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from server.config import Settings
from server.db.models import Question
from server.db.session import get_session_factory, init_db, reset_engine
from server.services.answer_llm.provider import AnswerServiceError, FakeProvider
from server.services.event_publisher import EventPublisher
from server.services.question_store import QuestionRecord, QuestionStore
from server.services.run_controller import (
    ANSWER_ERROR_SENTINEL,
    COMPLETED,
    IDLE,
    RUNNING,
    STOPPED,
    RunController,
)

CHOICES = {"A": "alpha", "B": "beta", "C": "gamma", "D": "delta"}


def _q(qid, domain, text=None, expected="A", choices=None):
    return QuestionRecord(
        id=qid,
        domain=domain,
        question=text or f"Question {qid}?",
        choices=dict(CHOICES if choices is None else choices),
        expected_answer=expected,
    )


class MemoryStore:
    """In-memory stand-in for QuestionStore."""

    def __init__(self, rows_by_domain, fail_writes=0):
        self.domains = tuple(rows_by_domain)
        self.rows = {d: list(rows) for d, rows in rows_by_domain.items()}
        self.results = {}
        self.writes = []
        self.fail_writes = fail_writes

    def list_all(self, domain):
        return list(self.rows[domain])

    def sample_random(self, domain, n):
        rows = list(self.rows[domain])
        random.shuffle(rows)
        return rows[:n]

    def record_result(self, question_id, result):
        if self.fail_writes:
            self.fail_writes -= 1
            raise RuntimeError("database is locked")
        self.writes.append(question_id)
        self.results[question_id] = result
        return True


class BrokenStore(MemoryStore):
    def list_all(self, domain):
        raise RuntimeError("connection lost")


def _controller(store, provider, **kwargs):
    publisher = EventPublisher()
    kwargs.setdefault("poll_interval_s", 0.01)
    ctl = RunController(store, provider, publisher, domains=store.domains, **kwargs)
    return ctl, publisher


async def _wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _question_events(events):
    return [e for e in events if "status" not in e]


def test_full_run_processes_every_question_in_domain_order():
    store = MemoryStore({
        "Computer_Security": [_q("cs1", "Computer_Security"), _q("cs2", "Computer_Security")],
        "History": [_q("h1", "History"), _q("h2", "History")],
    })
    provider = FakeProvider(["The answer is B."])
    ctl, publisher = _controller(store, provider)

    async def scenario():
        sub = publisher.register()
        assert ctl.start()["status"] == "started"
        assert ctl.state == RUNNING
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    per_q = _question_events(events)
    assert [e["domain"] for e in per_q] == ["Computer_Security"] * 2 + ["History"] * 2
    assert [e["question"] for e in per_q] == ["Question cs1?", "Question cs2?", "Question h1?", "Question h2?"]
    assert all(e["answer"] == "B" for e in per_q)
    assert all(isinstance(e["responseTime"], int) for e in per_q)
    assert events[-1]["status"] == "done"
    assert events[-1]["processed"] == 4
    assert not any(e.get("status") == "domain-start" for e in events)

    assert ctl.state == COMPLETED
    assert not ctl.is_running
    assert store.writes == ["cs1", "cs2", "h1", "h2"]
    assert store.results["h1"].normalized_answer == "B"
    assert store.results["h1"].raw_answer_text == "The answer is B."


def test_prompt_embeds_question_and_every_choice():
    store = MemoryStore({"History": [_q("h1", "History", text="When did the Neolithic begin?")]})
    provider = FakeProvider(["C"])
    ctl, _ = _controller(store, provider)

    async def scenario():
        ctl.start()
        await ctl.join()

    asyncio.run(scenario())
    prompt = provider.prompts[0]
    assert "When did the Neolithic begin?" in prompt
    for label, text in CHOICES.items():
        assert f"{label}: {text}" in prompt
    assert "ONE letter" in prompt
    assert "No explanation" in prompt


def test_second_start_is_rejected_while_running():
    store = MemoryStore({"History": [_q(f"h{i}", "History") for i in range(3)]})
    provider = FakeProvider(["A"], delay_s=0.02)
    ctl, _ = _controller(store, provider)

    async def scenario():
        first = ctl.start()
        second = ctl.start()
        third = ctl.quick_start()
        await ctl.join()
        return first, second, third

    first, second, third = asyncio.run(scenario())
    assert first["status"] == "started"
    assert second == {"status": "already-running", "run_id": first["run_id"]}
    assert third["status"] == "already-running"
    assert len(provider.prompts) == 3
    assert store.writes == ["h0", "h1", "h2"]


def test_new_run_accepted_after_completion():
    store = MemoryStore({"History": [_q("h1", "History")]})
    ctl, _ = _controller(store, FakeProvider(["A"]))

    async def scenario():
        first = ctl.start()
        await ctl.join()
        second = ctl.start()
        await ctl.join()
        return first, second

    first, second = asyncio.run(scenario())
    assert second["status"] == "started"
    assert second["run_id"] != first["run_id"]
    assert store.writes == ["h1", "h1"]


def test_pause_holds_progress_until_resume():
    store = MemoryStore({"History": [_q(f"h{i}", "History") for i in range(5)]})
    provider = FakeProvider(["A"], delay_s=0.01)
    ctl, publisher = _controller(store, provider)

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await _wait_until(lambda: ctl.status()["processed"] >= 1)
        assert ctl.pause() == {"status": "paused"}
        # Let a call that was already in flight settle.
        await asyncio.sleep(0.05)
        held = ctl.status()["processed"]
        await asyncio.sleep(0.1)
        assert ctl.status()["processed"] == held
        assert ctl.status()["paused"] is True
        assert ctl.state == RUNNING
        assert held < 5

        assert ctl.resume() == {"status": "resumed"}
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    assert len(_question_events(events)) == 5
    assert events[-1]["status"] == "done"
    assert ctl.state == COMPLETED


def test_resume_wakes_paused_loop_promptly():
    store = MemoryStore({"History": [_q(f"h{i}", "History") for i in range(3)]})
    ctl, _ = _controller(store, FakeProvider(["A"]), poll_interval_s=5.0)

    async def scenario():
        ctl.start()
        ctl.pause()
        await asyncio.sleep(0.05)
        assert ctl.status()["processed"] == 0
        started = time.monotonic()
        ctl.resume()
        await ctl.join()
        return time.monotonic() - started

    elapsed = asyncio.run(scenario())
    # Resume sets the wake event; no need to wait out the 5s poll tick.
    assert elapsed < 1.0
    assert ctl.state == COMPLETED


def test_stop_mid_run_halts_before_next_question():
    rows = [_q(f"h{i}", "History") for i in range(1, 7)]
    store = MemoryStore({"History": rows})
    holder = {}

    def reply(prompt):
        if "Question h3?" in prompt:
            holder["ctl"].stop()
        return "D"

    ctl, publisher = _controller(store, FakeProvider(reply))
    holder["ctl"] = ctl

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    # The in-flight question finishes; nothing after it is processed.
    assert store.writes == ["h1", "h2", "h3"]
    assert len(_question_events(events)) == 3
    assert events[-1]["status"] == "stopped"
    assert events[-1]["reason"] == "requested"
    assert events[-1]["processed"] == 3
    assert ctl.state == STOPPED
    assert not ctl.is_running
    assert store.results["h1"].normalized_answer == "D"


def test_stop_while_paused_wakes_loop():
    store = MemoryStore({"History": [_q(f"h{i}", "History") for i in range(4)]})
    ctl, publisher = _controller(store, FakeProvider(["A"], delay_s=0.01), poll_interval_s=5.0)

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await _wait_until(lambda: ctl.status()["processed"] >= 1)
        ctl.pause()
        await asyncio.sleep(0.03)
        assert ctl.stop() == {"status": "stopped"}
        await asyncio.wait_for(ctl.join(), timeout=1.0)
        return sub.drain()

    events = asyncio.run(scenario())
    assert events[-1]["status"] == "stopped"
    assert ctl.state == STOPPED
    assert len(store.writes) < 4


def test_reset_returns_to_idle_and_allows_new_start():
    store = MemoryStore({"History": [_q(f"h{i}", "History") for i in range(4)]})
    ctl, publisher = _controller(store, FakeProvider(["B"], delay_s=0.03))

    async def scenario():
        sub = publisher.register()
        old = ctl.start()
        await _wait_until(lambda: ctl.status().get("processed", 0) >= 1)
        assert ctl.reset() == {"status": "reset-complete"}
        assert ctl.state == IDLE
        assert ctl.status() == {"state": IDLE, "paused": False}
        new = ctl.start()
        assert new["status"] == "started"
        await ctl.join()
        # Give the detached loop time to reach its checkpoint and exit.
        await asyncio.sleep(0.1)
        return old, new, sub.drain()

    old, new, events = asyncio.run(scenario())
    statuses = [e.get("status") for e in events]
    reset_at = statuses.index("reset")
    after = events[reset_at + 1:]
    assert after, "new run produced no events"
    assert all(e["run_id"] == new["run_id"] for e in after)
    assert after[-1]["status"] == "done"
    assert "stopped" not in statuses
    assert ctl.state == COMPLETED


def test_reset_when_idle_still_tells_observers():
    store = MemoryStore({"History": []})
    ctl, publisher = _controller(store, FakeProvider(["A"]))

    async def scenario():
        sub = publisher.register()
        result = ctl.reset()
        return result, sub.drain()

    result, events = asyncio.run(scenario())
    assert result == {"status": "reset-complete"}
    assert events == [{"status": "reset"}]


def test_shutdown_cancels_run_without_reset_event():
    store = MemoryStore({"History": [_q(f"h{i}", "History") for i in range(5)]})
    ctl, publisher = _controller(store, FakeProvider(["A"], delay_s=0.5))

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await _wait_until(lambda: ctl.status().get("counts"))
        await ctl.shutdown()
        return sub.drain()

    events = asyncio.run(scenario())
    assert all(e.get("status") != "reset" for e in events)
    assert _question_events(events) == []
    assert not ctl.is_running
    assert ctl.state == IDLE
    assert store.writes == []


def test_controls_when_idle_are_noops():
    store = MemoryStore({"History": [_q("h1", "History")]})
    ctl, _ = _controller(store, FakeProvider(["A"]))
    assert ctl.pause() == {"status": "paused"}
    assert ctl.resume() == {"status": "resumed"}
    assert ctl.stop() == {"status": "stopped"}
    assert ctl.state == IDLE
    assert store.writes == []


def test_quick_run_reports_actual_sample_size():
    store = MemoryStore({"History": [_q(f"h{i}", "History") for i in range(10)]})
    provider = FakeProvider(["C"])
    ctl, publisher = _controller(store, provider, quick_sample_size=50)

    async def scenario():
        sub = publisher.register()
        assert ctl.quick_start()["status"] == "started"
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    assert events[0]["status"] == "domain-start"
    assert events[0]["domain"] == "History"
    assert events[0]["count"] == 10
    assert len(_question_events(events)) == 10
    assert events[-1]["status"] == "quick-done"
    assert sorted(store.writes) == sorted(f"h{i}" for i in range(10))
    assert ctl.status()["counts"] == {"History": 10}


def test_quick_run_caps_sample_per_domain():
    store = MemoryStore({
        "History": [_q(f"h{i}", "History") for i in range(8)],
        "Social_Science": [_q(f"s{i}", "Social_Science") for i in range(2)],
    })
    ctl, publisher = _controller(store, FakeProvider(["A"]), quick_sample_size=3)

    async def scenario():
        sub = publisher.register()
        ctl.quick_start()
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    starts = [e for e in events if e.get("status") == "domain-start"]
    assert [(e["domain"], e["count"]) for e in starts] == [("History", 3), ("Social_Science", 2)]
    assert len(set(store.writes)) == 5


def test_answer_service_error_records_sentinel_and_continues():
    store = MemoryStore({"History": [_q("h1", "History"), _q("h2", "History")]})
    provider = FakeProvider([AnswerServiceError(kind="timeout", message="slow"), "C"])
    ctl, publisher = _controller(store, provider)

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    first, second = _question_events(events)
    assert first["answer"] == ""
    assert first["error"] == "timeout"
    assert second["answer"] == "C"
    assert "error" not in second
    assert store.results["h1"].raw_answer_text == ANSWER_ERROR_SENTINEL
    assert store.results["h1"].normalized_answer == ""
    assert ctl.status()["errors"] == 1
    assert events[-1]["status"] == "done"


def test_persistence_failure_does_not_abort_run():
    store = MemoryStore({"History": [_q("h1", "History"), _q("h2", "History")]}, fail_writes=1)
    ctl, publisher = _controller(store, FakeProvider(["B"]))

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    assert len(_question_events(events)) == 2
    assert store.writes == ["h2"]
    assert events[-1]["status"] == "done"
    assert ctl.state == COMPLETED


def test_malformed_question_is_skipped_with_warning(caplog):
    bad = _q("bad", "History", choices={"A": "x", "B": "y", "C": "z"})
    store = MemoryStore({"History": [bad, _q("ok", "History")]})
    provider = FakeProvider(["A"])
    ctl, publisher = _controller(store, provider)

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await ctl.join()
        return sub.drain()

    with caplog.at_level("WARNING", logger="quizbench.run"):
        events = asyncio.run(scenario())
    assert len(provider.prompts) == 1
    assert store.writes == ["ok"]
    assert ctl.status()["skipped"] == 1
    assert len(_question_events(events)) == 1
    assert any("missing choices D" in r.getMessage() for r in caplog.records)


def test_choices_that_are_not_a_mapping_are_skipped():
    bad = _q("bad", "History")
    bad.choices = ["x", "y", "z", "w"]
    store = MemoryStore({"History": [bad, _q("ok", "History")]})
    provider = FakeProvider(["A"])
    ctl, _ = _controller(store, provider)

    async def scenario():
        ctl.start()
        await ctl.join()

    asyncio.run(scenario())
    assert store.writes == ["ok"]
    assert ctl.status()["skipped"] == 1
    assert ctl.state == COMPLETED


def test_bad_stored_row_does_not_abort_run():
    with tempfile.TemporaryDirectory() as tmp:
        reset_engine()
        settings = Settings(database_url=f"sqlite:///{Path(tmp) / 'q.db'}", domains=("History", "Social_Science"))
        init_db(settings)
        store = QuestionStore(get_session_factory(settings), settings.domains)
        store.add_questions("History", [{"question": "Good?", "choices": dict(CHOICES), "expected_answer": "A"}])
        store.add_questions("Social_Science", [{"question": "Also good?", "choices": dict(CHOICES), "expected_answer": "B"}])
        with get_session_factory(settings)() as db:
            db.add(Question(domain="History", question="Listed?", choices=["a", "b", "c", "d"], expected_answer="A"))
            db.commit()

        provider = FakeProvider(["A"])
        ctl, publisher = _controller(store, provider)

        async def scenario():
            sub = publisher.register()
            ctl.start()
            await ctl.join()
            return sub.drain()

        events = asyncio.run(scenario())
        reset_engine()

    assert [e["question"] for e in _question_events(events)] == ["Good?", "Also good?"]
    assert events[-1]["status"] == "done"
    assert events[-1]["processed"] == 2
    assert ctl.status()["skipped"] == 1
    assert ctl.state == COMPLETED


def test_store_failure_ends_run_stopped_and_releases_exclusivity():
    store = BrokenStore({"History": [_q("h1", "History")]})
    ctl, publisher = _controller(store, FakeProvider(["A"]))

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    assert events[-1]["status"] == "stopped"
    assert events[-1]["reason"] == "error"
    assert ctl.state == STOPPED
    assert not ctl.is_running


def test_latency_is_measured_around_the_call():
    store = MemoryStore({"History": [_q("h1", "History")]})
    ctl, publisher = _controller(store, FakeProvider(["A"], delay_s=0.05))

    async def scenario():
        sub = publisher.register()
        ctl.start()
        await ctl.join()
        return sub.drain()

    events = asyncio.run(scenario())
    (event,) = _question_events(events)
    assert event["responseTime"] >= 40
    assert store.results["h1"].response_time_ms == event["responseTime"]
