"""
Chat session state: the message list, thread history, settings and send lifecycle.

``ChatSession`` is the single owner of mutable chat state. It must be driven
from one asyncio event loop; streaming, animation and the debounced history
save run as tasks on that loop and mutate state only through the session's
methods. Display layers ``subscribe`` to be told after every change.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable

from .client import GeminiClient
from .exceptions import GeminiError
from .history import ChatHistoryStore, HistoryStoreError
from .models import (
    ChatMessage,
    ChatRole,
    ChatThread,
    ChatThreadSummary,
    ConnectionStatus,
    SafetyPreset,
    history_title,
    utc_now,
)
from .orchestrator import ReplyOrchestrator
from .settings import (
    API_KEY_ACCOUNT,
    MODEL_PREFERENCE_KEY,
    SAFETY_PRESET_PREFERENCE_KEY,
    SYSTEM_PROMPT_PREFERENCE_KEY,
    LocalStore,
    SettingsError,
    effective_model,
)

logger = logging.getLogger("gemini_chat.session")

HISTORY_SAVE_DEBOUNCE_SECONDS = 0.9
MISSING_API_KEY_MESSAGE = "Please enter your Gemini API key."

SessionListener = Callable[["ChatSession"], None]


class ChatSession:
    """Chat state machine over a ``GeminiClient`` and the local stores."""

    def __init__(
        self,
        client: GeminiClient,
        local_store: LocalStore,
        history_store: ChatHistoryStore,
        *,
        debounce_seconds: float = HISTORY_SAVE_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._local_store = local_store
        self._history_store = history_store
        self._debounce_seconds = debounce_seconds
        self._clock = clock
        self._sleep = sleep

        self.messages: list[ChatMessage] = []
        self.draft = ""
        self.is_sending = False
        self.is_loading_models = False
        self.error_message: str | None = None
        self.available_models: list[str] = []
        self.chat_history: list[ChatThreadSummary] = []
        self.current_chat_id: uuid.UUID | None = None
        self.connection_status = ConnectionStatus.not_configured()

        self._threads: list[ChatThread] = []
        self._listeners: list[SessionListener] = []
        self._send_task: asyncio.Task[None] | None = None
        self._cancel_event: asyncio.Event | None = None
        self._save_task: asyncio.Task[None] | None = None

        self._model = effective_model(self._read_setting(MODEL_PREFERENCE_KEY))
        self._system_prompt = self._read_setting(SYSTEM_PROMPT_PREFERENCE_KEY) or ""
        self._safety_preset = SafetyPreset.from_value(
            self._read_setting(SAFETY_PRESET_PREFERENCE_KEY)
        )
        self._api_key = ""
        self._load_api_key()

        self._load_history()

    # ------------------------------------------------------------------
    # Observed settings
    # ------------------------------------------------------------------

    @property
    def api_key(self) -> str:
        return self._api_key

    @api_key.setter
    def api_key(self, value: str) -> None:
        trimmed = value.strip()
        previous = self._api_key.strip()
        self._api_key = value
        if not trimmed:
            self.connection_status = ConnectionStatus.not_configured()
        elif trimmed != previous:
            self.connection_status = ConnectionStatus.not_checked()
        self._notify()

    @property
    def model(self) -> str:
        return self._model

    @model.setter
    def model(self, value: str) -> None:
        self._model = value
        self._write_setting(MODEL_PREFERENCE_KEY, value)
        self._notify()

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @system_prompt.setter
    def system_prompt(self, value: str) -> None:
        self._system_prompt = value
        self._write_setting(SYSTEM_PROMPT_PREFERENCE_KEY, value)
        self._notify()

    @property
    def safety_preset(self) -> SafetyPreset:
        return self._safety_preset

    @safety_preset.setter
    def safety_preset(self, value: SafetyPreset) -> None:
        self._safety_preset = value
        self._write_setting(SAFETY_PRESET_PREFERENCE_KEY, value.value)
        self._notify()

    @property
    def can_send(self) -> bool:
        return bool(self.draft.strip()) and bool(self._api_key.strip()) and not self.is_sending

    @property
    def can_manage_history(self) -> bool:
        return not self.is_sending

    @property
    def threads(self) -> list[ChatThread]:
        return list(self._threads)

    def current_thread(self) -> ChatThread | None:
        if self.current_chat_id is None:
            return None
        return self._find_thread(self.current_chat_id)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Call ``listener(session)`` after every state change; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # API key & models
    # ------------------------------------------------------------------

    def save_api_key(self) -> None:
        self.persist_api_key(show_errors=True)

    def persist_api_key(self, show_errors: bool = False) -> None:
        trimmed = self._api_key.strip()
        try:
            if not trimmed:
                self._local_store.delete_string(API_KEY_ACCOUNT)
                self.connection_status = ConnectionStatus.not_configured()
            else:
                self._local_store.save_string(trimmed, API_KEY_ACCOUNT)
            if show_errors:
                self.error_message = None
        except SettingsError as exc:
            logger.warning("[GeminiChat Session] Could not store API key: %s", exc)
            if show_errors:
                self.error_message = str(exc)
        self._notify()

    async def load_available_models(self, auto_select: bool = False) -> None:
        """Check the key against the model listing and refresh ``available_models``."""
        if self.is_loading_models:
            return

        key = self._api_key.strip()
        if not key:
            self.connection_status = ConnectionStatus.not_configured()
            self.error_message = MISSING_API_KEY_MESSAGE
            self._notify()
            return

        self.is_loading_models = True
        self.connection_status = ConnectionStatus.checking()
        self._notify()
        try:
            models = await self._client.list_generate_content_models(key, require_streaming=True)
            if not models:
                models = await self._client.list_generate_content_models(
                    key, require_streaming=False
                )
            self.available_models = models
            self.connection_status = ConnectionStatus.connected(len(models))
            self.error_message = None
            if auto_select and models and self._model not in models:
                self.model = models[0]
        except GeminiError as exc:
            self.connection_status = ConnectionStatus.failed(str(exc))
            self.error_message = str(exc)
        finally:
            self.is_loading_models = False
            self._notify()

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def clear_chat(self) -> None:
        self.start_new_chat()

    def start_new_chat(self) -> None:
        if not self.can_manage_history:
            return
        self.cancel_response()
        self._deduplicate_empty_threads(prefer_current=True)

        if not self.messages:
            self.draft = ""
            self.error_message = None
            self._rebuild_history_summaries()
            self._persist_history_now()
            self._notify()
            return

        existing_empty = next((thread for thread in self._threads if thread.is_empty), None)
        if existing_empty is not None:
            self.open_chat(existing_empty.id)
            return

        thread = ChatThread.empty()
        self._threads.insert(0, thread)
        self.current_chat_id = thread.id
        self.messages = []
        self.draft = ""
        self.error_message = None
        self._rebuild_history_summaries()
        self._persist_history_now()
        self._notify()

    def open_chat(self, chat_id: uuid.UUID) -> None:
        if not self.can_manage_history:
            return
        thread = self._find_thread(chat_id)
        if thread is None:
            return

        self.current_chat_id = thread.id
        self.messages = list(thread.messages)
        self.draft = ""
        self.error_message = None
        self._rebuild_history_summaries()
        self._persist_history_now()
        self._notify()

    def delete_chat(self, chat_id: uuid.UUID) -> None:
        if not self.can_manage_history:
            return

        deleting_current = self.current_chat_id == chat_id
        self._threads = [thread for thread in self._threads if thread.id != chat_id]

        if not self._threads:
            thread = ChatThread.empty()
            self._threads = [thread]
            self.current_chat_id = thread.id
            self.messages = []
            self.draft = ""
        elif deleting_current:
            latest = max(self._threads, key=lambda thread: thread.updated_at)
            self.current_chat_id = latest.id
            self.messages = list(latest.messages)
            self.draft = ""

        self._rebuild_history_summaries()
        self._persist_history_now()
        self._notify()

    def search_history(self, query: str) -> list[ChatThreadSummary]:
        return [summary for summary in self.chat_history if summary.matches(query)]

    def persist_history(self) -> None:
        """Flush the current chat to disk now, dropping any pending debounced save."""
        self._cancel_pending_save()
        self._sync_current_thread(update_timestamp=True, update_summaries=True)
        self._persist_history_now()
        self._notify()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def start_send(self) -> asyncio.Task[None] | None:
        """Run ``send`` as the session's single send task; None if one is already running."""
        if self._send_task is not None:
            return None
        task = asyncio.get_running_loop().create_task(self.send())
        self._send_task = task
        task.add_done_callback(self._clear_send_task)
        return task

    async def send(self) -> None:
        if self.is_sending:
            return
        text = self.draft.strip()
        if not text:
            return
        key = self._api_key.strip()
        if not key:
            self.error_message = MISSING_API_KEY_MESSAGE
            self._notify()
            return

        self.messages.append(ChatMessage(role=ChatRole.USER, text=text))
        self.draft = ""
        self.error_message = None
        self.api_key = key
        self.persist_api_key(show_errors=True)
        self.is_sending = True
        self._sync_current_thread(update_timestamp=True, update_summaries=True)
        self._persist_history_now()
        self._notify()

        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        orchestrator = ReplyOrchestrator(
            self._client,
            self,
            cancel_event=cancel_event,
            on_model_resolved=self._adopt_resolved_model,
            clock=self._clock,
            sleep=self._sleep,
        )
        try:
            outcome = await orchestrator.deliver(
                list(self.messages), key, self._model, self._system_prompt, self._safety_preset
            )
            self.error_message = outcome.notice()
        except asyncio.CancelledError:
            if not cancel_event.is_set():
                raise
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                current.uncancel()
            logger.info("[GeminiChat Session] Response cancelled.")
        except GeminiError as exc:
            self.error_message = str(exc)
        finally:
            self.is_sending = False
            self._cancel_event = None
            self._sync_current_thread(update_timestamp=True, update_summaries=True)
            self._persist_history_now()
            self._notify()

    def cancel_response(self) -> None:
        """Stop the in-flight reply; text already rendered stays in the chat."""
        if self._cancel_event is not None:
            self._cancel_event.set()
        task = self._send_task
        # From inside the send task the event alone unwinds it; task.cancel() would
        # leave a pending cancellation behind after send() swallows the first one.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self.error_message = None
        self._notify()

    async def aclose(self) -> None:
        """Cancel any reply in flight and write out a pending debounced save."""
        task = self._send_task
        if task is not None and not task.done():
            self.cancel_response()
            await asyncio.gather(task, return_exceptions=True)
        if self._save_task is not None:
            self._cancel_pending_save()
            self._sync_current_thread(update_timestamp=False, update_summaries=True)
            self._persist_history_now()

    def _clear_send_task(self, task: asyncio.Task[None]) -> None:
        if self._send_task is task:
            self._send_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.error("[GeminiChat Session] Send task failed", exc_info=task.exception())

    def _adopt_resolved_model(self, model: str, available_models: list[str]) -> None:
        self.available_models = available_models
        self.model = model

    # ------------------------------------------------------------------
    # Reply target
    # ------------------------------------------------------------------

    def append_assistant_placeholder(self, model_name: str) -> uuid.UUID:
        message = ChatMessage(role=ChatRole.ASSISTANT, text="", model_name=model_name)
        self.messages.append(message)
        self._sync_current_thread(update_timestamp=False, update_summaries=False)
        self._schedule_history_save()
        self._notify()
        return message.id

    def update_message(self, message_id: uuid.UUID, text: str) -> None:
        message = self._find_message(message_id)
        if message is None:
            return
        message.text = text
        self._sync_current_thread(update_timestamp=False, update_summaries=False)
        self._schedule_history_save()
        self._notify()

    def remove_message(self, message_id: uuid.UUID) -> None:
        self.messages = [message for message in self.messages if message.id != message_id]
        self._sync_current_thread(update_timestamp=False, update_summaries=False)
        self._schedule_history_save()
        self._notify()

    def message_text(self, message_id: uuid.UUID) -> str:
        message = self._find_message(message_id)
        return message.text if message is not None else ""

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_history(self) -> None:
        try:
            self._threads = self._history_store.load_threads()
        except HistoryStoreError as exc:
            logger.warning("[GeminiChat Session] %s", exc)
            self.error_message = f"Failed to load chat history: {exc}"
            self._start_fresh_history()
            return

        self._deduplicate_empty_threads(prefer_current=False)
        if not self._threads:
            self._start_fresh_history()
            return

        latest = max(self._threads, key=lambda thread: thread.updated_at)
        self.current_chat_id = latest.id
        self.messages = list(latest.messages)
        self._rebuild_history_summaries()

    def _start_fresh_history(self) -> None:
        thread = ChatThread.empty()
        self._threads = [thread]
        self.current_chat_id = thread.id
        self.messages = []
        self._rebuild_history_summaries()

    def _sync_current_thread(self, *, update_timestamp: bool, update_summaries: bool) -> None:
        """Copy the live message list into the current thread record."""
        if self.current_chat_id is None:
            thread = ChatThread.empty()
            self._threads.insert(0, thread)
            self.current_chat_id = thread.id

        now = utc_now()
        thread = self._find_thread(self.current_chat_id)
        if thread is None:
            thread = ChatThread(id=self.current_chat_id, created_at=now, updated_at=now)
            self._threads.insert(0, thread)

        thread.messages = list(self.messages)
        thread.title = history_title(self.messages)
        if update_timestamp:
            thread.updated_at = now
        if update_summaries:
            self._rebuild_history_summaries()

    def _schedule_history_save(self) -> None:
        self._cancel_pending_save()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._persist_history_now()
            return
        self._save_task = loop.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self._debounce_seconds)
        self._save_task = None
        self._sync_current_thread(update_timestamp=False, update_summaries=False)
        self._persist_history_now()

    def _cancel_pending_save(self) -> None:
        if self._save_task is not None:
            self._save_task.cancel()
            self._save_task = None

    def _persist_history_now(self) -> None:
        self._cancel_pending_save()
        self._deduplicate_empty_threads(prefer_current=True)
        self._rebuild_history_summaries()
        try:
            self._history_store.save_threads(self._threads)
        except HistoryStoreError as exc:
            logger.warning("[GeminiChat Session] %s", exc)
            self.error_message = f"Failed to save chat history: {exc}"

    def _deduplicate_empty_threads(self, *, prefer_current: bool) -> None:
        """Keep at most one empty thread: the open one if preferred and empty, else the newest."""
        empty_threads = [thread for thread in self._threads if thread.is_empty]
        if len(empty_threads) <= 1:
            return

        keep_id: uuid.UUID
        if (
            prefer_current
            and self.current_chat_id is not None
            and not self.messages
            and any(thread.id == self.current_chat_id for thread in empty_threads)
        ):
            keep_id = self.current_chat_id
        else:
            keep_id = max(empty_threads, key=lambda thread: thread.updated_at).id

        self._threads = [
            thread for thread in self._threads if not thread.is_empty or thread.id == keep_id
        ]

    def _rebuild_history_summaries(self) -> None:
        ordered = sorted(self._threads, key=lambda thread: thread.updated_at, reverse=True)
        self.chat_history = [thread.summary() for thread in ordered]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_thread(self, chat_id: uuid.UUID) -> ChatThread | None:
        return next((thread for thread in self._threads if thread.id == chat_id), None)

    def _find_message(self, message_id: uuid.UUID) -> ChatMessage | None:
        return next((message for message in self.messages if message.id == message_id), None)

    def _load_api_key(self) -> None:
        try:
            self.api_key = self._local_store.read_string(API_KEY_ACCOUNT) or ""
        except SettingsError as exc:
            logger.warning("[GeminiChat Session] %s", exc)
            self.error_message = str(exc)
            self.connection_status = ConnectionStatus.failed(str(exc))

    def _read_setting(self, account: str) -> str | None:
        try:
            return self._local_store.read_string(account)
        except SettingsError as exc:
            logger.warning("[GeminiChat Session] %s", exc)
            self.error_message = str(exc)
            return None

    def _write_setting(self, account: str, value: str) -> None:
        try:
            self._local_store.save_string(value, account)
        except SettingsError as exc:
            logger.warning("[GeminiChat Session] %s", exc)
            self.error_message = str(exc)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)
