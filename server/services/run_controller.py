"""
Evaluation run controller.

Drives one evaluation sweep at a time over the stored question sets:
for each question it builds a prompt, asks the answer service, reduces
the reply to a label, writes the result back and publishes a progress
event. Pause, resume, stop and reset are cooperative: the loop observes
them between questions, never in the middle of an answer-service call.

State machine (per run):

    idle --start/quick_start--> running --(all processed)--> completed
                                running --stop------------> stopped
    reset: any state --> idle (detaches the active run)

`paused` is orthogonal to `running`. At most one run is active per
controller; the application holds exactly one controller.

Control methods must be called on the event loop that runs the sweep
(FastAPI async routes do). The active-run check-and-set is additionally
guarded by a lock.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from server.services.answer_llm.prompts import build_answer_prompt
from server.services.answer_llm.provider import AnswerProvider, AnswerServiceError
from server.services.answer_parse import DEFAULT_LABELS, extract_label, label_set
from server.services.event_publisher import EventPublisher
from server.services.question_store import EvaluationResult, QuestionRecord

logger = logging.getLogger("quizbench.run")

# Run states
IDLE = "idle"
RUNNING = "running"
COMPLETED = "completed"
STOPPED = "stopped"

# Run kinds
FULL_RUN = "full"
QUICK_RUN = "quick"

# Stored as raw text when the answer service fails.
ANSWER_ERROR_SENTINEL = "[answer-service-error]"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Run:
    run_id: str
    kind: str
    domains: Sequence[str]
    state: str = RUNNING
    paused: bool = False
    stop_requested: bool = False
    detached: bool = False
    counts: Dict[str, int] = field(default_factory=dict)
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    resume: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "state": self.state,
            "paused": self.paused,
            "domains": list(self.domains),
            "counts": dict(self.counts),
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class RunController:
    def __init__(
        self,
        store,
        provider: AnswerProvider,
        publisher: EventPublisher,
        *,
        domains: Sequence[str],
        labels: str = DEFAULT_LABELS,
        quick_sample_size: int = 50,
        poll_interval_s: float = 0.25,
    ):
        self.store = store
        self.provider = provider
        self.publisher = publisher
        self.domains = tuple(domains)
        self.labels = labels.upper()
        self.quick_sample_size = quick_sample_size
        self.poll_interval_s = poll_interval_s

        self._lock = threading.Lock()
        self._active: Optional[Run] = None
        self._last: Optional[Run] = None

    # ----------------------------
    # Observation
    # ----------------------------
    @property
    def state(self) -> str:
        with self._lock:
            if self._active is not None:
                return RUNNING
            return self._last.state if self._last is not None else IDLE

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._active is not None

    def status(self) -> Dict[str, Any]:
        with self._lock:
            run = self._active or self._last
        if run is None:
            return {"state": IDLE, "paused": False}
        return run.snapshot()

    async def join(self) -> None:
        """Wait for the current (or most recent) run's loop to exit."""
        with self._lock:
            run = self._active or self._last
        if run is not None and run.task is not None:
            await asyncio.shield(run.task)

    # ----------------------------
    # Triggers
    # ----------------------------
    def start(self) -> Dict[str, Any]:
        return self._begin(FULL_RUN)

    def quick_start(self) -> Dict[str, Any]:
        return self._begin(QUICK_RUN)

    def _begin(self, kind: str) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._active is not None:
                logger.info("Start (%s) rejected: run %s already running", kind, self._active.run_id)
                return {"status": "already-running", "run_id": self._active.run_id}
            run = Run(run_id=uuid.uuid4().hex, kind=kind, domains=self.domains)
            run.resume.set()
            self._active = run
            self._last = run
        run.task = loop.create_task(self._execute(run))
        logger.info("Run %s (%s) started over %s", run.run_id, kind, ", ".join(self.domains))
        return {"status": "started", "run_id": run.run_id}

    def pause(self) -> Dict[str, Any]:
        with self._lock:
            run = self._active
        if run is not None and not run.paused:
            run.paused = True
            run.resume.clear()
            logger.info("Run %s paused", run.run_id)
        return {"status": "paused"}

    def resume(self) -> Dict[str, Any]:
        with self._lock:
            run = self._active
        if run is not None and run.paused:
            run.paused = False
            run.resume.set()
            logger.info("Run %s resumed", run.run_id)
        return {"status": "resumed"}

    def stop(self) -> Dict[str, Any]:
        with self._lock:
            run = self._active
        if run is not None:
            run.stop_requested = True
            run.resume.set()  # a paused loop must wake to see the stop
            logger.info("Run %s stop requested", run.run_id)
        return {"status": "stopped"}

    def reset(self) -> Dict[str, Any]:
        """Stop semantics plus an immediate return to idle. Written results stay."""
        run = self._detach()
        if run is not None:
            logger.info("Run %s reset", run.run_id)
        self.publisher.publish({"status": "reset"})
        return {"status": "reset-complete"}

    async def shutdown(self) -> None:
        """Detach and cancel any active run (application shutdown). Observers are not told to reset."""
        run = self._detach()
        if run is None:
            return
        logger.info("Run %s cancelled for shutdown", run.run_id)
        if run.task is not None and not run.task.done():
            run.task.cancel()
            try:
                await run.task
            except asyncio.CancelledError:
                pass

    # ----------------------------
    # Loop
    # ----------------------------
    async def _execute(self, run: Run) -> None:
        try:
            for domain in run.domains:
                if not await self._checkpoint(run):
                    return
                questions = await self._load(run, domain)
                run.counts[domain] = len(questions)
                logger.info("Evaluating domain %s (%d questions)", domain, len(questions))
                if run.kind == QUICK_RUN:
                    self._emit(run, {"status": "domain-start", "domain": domain, "count": len(questions)})

                for question in questions:
                    if not await self._checkpoint(run):
                        return
                    await self._evaluate(run, domain, question)

            if run.stop_requested:
                self._halt(run)
                return
            self._finish(run, COMPLETED)
            done = "quick-done" if run.kind == QUICK_RUN else "done"
            self._emit(run, {"status": done, "processed": run.processed})
            logger.info("Run %s completed: %d processed, %d skipped, %d errors",
                        run.run_id, run.processed, run.skipped, run.errors)
        except asyncio.CancelledError:
            self._finish(run, STOPPED)
            raise
        except Exception as e:
            logger.exception("Run %s aborted", run.run_id)
            self._finish(run, STOPPED)
            self._emit(run, {"status": "stopped", "reason": "error", "error": str(e), "processed": run.processed})

    async def _load(self, run: Run, domain: str) -> List[QuestionRecord]:
        if run.kind == QUICK_RUN:
            return await asyncio.to_thread(self.store.sample_random, domain, self.quick_sample_size)
        return await asyncio.to_thread(self.store.list_all, domain)

    async def _checkpoint(self, run: Run) -> bool:
        """Between-question gate. False means the loop must exit."""
        if run.stop_requested:
            self._halt(run)
            return False
        while run.paused:
            try:
                await asyncio.wait_for(run.resume.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass
            if run.stop_requested:
                self._halt(run)
                return False
        return True

    def _malformed(self, q: QuestionRecord) -> Optional[str]:
        if not (q.question or "").strip():
            return "blank question text"
        choices = q.choices if isinstance(q.choices, Mapping) else {}
        missing = [lb for lb in label_set(self.labels) if not str(choices.get(lb) or "").strip()]
        if missing:
            return f"missing choices {''.join(missing)}"
        return None

    async def _evaluate(self, run: Run, domain: str, q: QuestionRecord) -> None:
        problem = self._malformed(q)
        if problem:
            run.skipped += 1
            logger.warning("Skipping question %s in %s: %s", q.id, domain, problem)
            return

        prompt = build_answer_prompt(q.question, q.choices, label_set(self.labels))
        started = time.perf_counter()
        try:
            raw_text, error = await self.provider.generate_answer(prompt)
        except Exception as e:
            logger.exception("Answer provider raised for question %s", q.id)
            raw_text, error = "", AnswerServiceError(kind="provider_error", message=str(e))
        response_time_ms = int(round((time.perf_counter() - started) * 1000))

        if error is not None:
            run.errors += 1
            logger.warning("Answer service failed for question %s: %s", q.id, error)
            raw_text, answer = ANSWER_ERROR_SENTINEL, ""
        else:
            answer = extract_label(raw_text, self.labels)
        logger.debug("%s | %s -> %r (%dms)", domain, q.id, answer, response_time_ms)

        result = EvaluationResult(
            normalized_answer=answer,
            raw_answer_text=raw_text,
            response_time_ms=response_time_ms,
            evaluated_at=_utcnow(),
        )
        try:
            await asyncio.to_thread(self.store.record_result, q.id, result)
        except Exception:
            logger.exception("Could not record result for question %s", q.id)

        run.processed += 1
        event = {
            "domain": domain,
            "question": q.question,
            "answer": answer,
            "responseTime": response_time_ms,
        }
        if error is not None:
            event["error"] = error.kind
        self._emit(run, event)

    # ----------------------------
    # Transitions
    # ----------------------------
    def _detach(self) -> Optional[Run]:
        """Forget the active run and stop it from emitting. Returns it, if any."""
        with self._lock:
            run = self._active
            self._active = None
            self._last = None
        if run is not None:
            run.stop_requested = True
            run.detached = True
            run.state = STOPPED
            run.finished_at = _utcnow()
            run.resume.set()
        return run

    def _halt(self, run: Run) -> None:
        self._finish(run, STOPPED)
        self._emit(run, {"status": "stopped", "reason": "requested", "processed": run.processed})
        logger.info("Run %s stopped after %d questions", run.run_id, run.processed)

    def _finish(self, run: Run, state: str) -> None:
        if not run.detached:
            run.state = state
            run.finished_at = _utcnow()
        with self._lock:
            if self._active is run:
                self._active = None

    def _emit(self, run: Run, event: Dict[str, Any]) -> None:
        if run.detached:
            return
        event.setdefault("run_id", run.run_id)
        self.publisher.publish(event)
