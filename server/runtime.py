from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Optional

from server.db.session import get_session_factory
from server.services.answer_llm.provider import AnswerProvider, build_provider
from server.services.event_publisher import EventPublisher
from server.services.question_store import QuestionStore
from server.services.run_controller import RunController

if TYPE_CHECKING:
    from server.config import Settings


class Runtime:
   """
   Process-wide holder for the long-lived collaborators.

   - Question store: one per database URL
   - Event publisher: shared by the run loop and every observer
   - Answer provider: built once from settings
   - Run controller: the single owner of run state for the process

   Everything is built lazily on first use.
   """

   def __init__(self, settings: "Settings"):
      self.settings = settings
      self._lock = threading.Lock()

      self._store: Optional[QuestionStore] = None
      self._publisher: Optional[EventPublisher] = None
      self._provider: Optional[AnswerProvider] = None
      self._controller: Optional[RunController] = None

   def get_store(self) -> QuestionStore:
      if self._store is not None:
         return self._store
      with self._lock:
         if self._store is None:
               self._store = QuestionStore(
                  get_session_factory(self.settings),
                  self.settings.domains,
               )
      return self._store

   def get_publisher(self) -> EventPublisher:
      if self._publisher is not None:
         return self._publisher
      with self._lock:
         if self._publisher is None:
               self._publisher = EventPublisher(backlog=self.settings.observer_backlog)
      return self._publisher

   def get_provider(self) -> AnswerProvider:
      if self._provider is not None:
         return self._provider
      with self._lock:
         if self._provider is None:
               self._provider = build_provider(self.settings)
      return self._provider

   def get_controller(self) -> RunController:
      """
      Returns the process-wide run controller, building it if needed.
      """
      if self._controller is not None:
         return self._controller
      store = self.get_store()
      publisher = self.get_publisher()
      provider = self.get_provider()
      with self._lock:
         if self._controller is None:
               self._controller = RunController(
                  store,
                  provider,
                  publisher,
                  domains=self.settings.domains,
                  labels=self.settings.choice_labels,
                  quick_sample_size=self.settings.quick_sample_size,
                  poll_interval_s=self.settings.pause_poll_interval_s,
               )
      return self._controller

   def set_provider(self, provider: AnswerProvider) -> None:
      """Swap the answer provider (tests). Drops a controller built on the old one."""
      with self._lock:
         self._provider = provider
         self._controller = None

   async def shutdown(self) -> None:
      if self._controller is not None:
         await self._controller.shutdown()


def runtime_from_settings(settings: "Settings") -> Runtime:
    """Build Runtime from Settings. Used by get_runtime dependency."""
    return Runtime(settings)
