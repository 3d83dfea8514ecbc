"""Hypomnema Session: the primary public API entry point."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import structlog
from ulid import ULID

from hypomnema.compaction.engine import Compactor
from hypomnema.context.builder import PayloadAssembler
from hypomnema.events.bus import EventBus, Handler, HypomnemaEvent
from hypomnema.llm.client import AnthropicClient, CompletionClient, RemoteServiceError
from hypomnema.models.config import HypomnemaConfig, StoreConfig
from hypomnema.models.record import (
    CompactionResult,
    MessageRecord,
    RepairResult,
    SessionSummary,
    Speaker,
    SummaryLogEntry,
    ToolRequest,
    ToolResult,
    TurnResult,
)
from hypomnema.repair.engine import RepairEngine
from hypomnema.store.lock import SessionLock
from hypomnema.store.records import RecordStore, SnapshotKind, StorageIOError
from hypomnema.tokens.estimator import TokenEstimator
from hypomnema.tools.output import ToolExecutor, run_tool, truncate_tool_output


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"sess"``, ``"toolu"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


def _resolve_config(config: HypomnemaConfig | None, db_path: str | None) -> HypomnemaConfig:
    cfg = config or HypomnemaConfig()
    if db_path is None:
        return cfg
    if config is not None and cfg.store.db_path != StoreConfig().db_path:
        raise ValueError("Specify db_path either via db_path= or config.store.db_path, not both.")
    return cfg.model_copy(update={"store": cfg.store.model_copy(update={"db_path": db_path})})


async def _open_store(cfg: HypomnemaConfig) -> RecordStore:
    store = RecordStore(cfg.store, TokenEstimator(cfg.compaction.chars_per_token))
    await store.initialize()
    return store


def _lock(store: RecordStore, session_id: str) -> SessionLock:
    lock = SessionLock(store.lock_dir, session_id)
    try:
        lock.acquire()
    except OSError as exc:
        raise StorageIOError("lock", exc) from exc
    return lock


class HypomnemaSession:
    """
    An open, exclusively held conversation session.

    Opening a session takes its lock file; a second opener, in this or any
    other process, fails with ``SessionBusyError`` until ``close()``.
    Loading an existing session repairs it before it is handed out.

    Usage::

        async with HypomnemaSession.open(db_path="./sessions.db") as session:
            result = await session.send("List the files in /tmp", tools=DEFAULT_TOOLS,
                                        tool_executor=my_executor)
            print(result.text)

        # Resume later
        async with HypomnemaSession.open(session_id) as session:
            ...

    **BYO agent loop**

    Callers that run their own completion calls can use :meth:`append`,
    :meth:`payload` and :meth:`compact` directly; ``send()`` is a convenience
    over those.
    """

    def __init__(
        self,
        session_id: str,
        model: str,
        config: HypomnemaConfig,
        store: RecordStore,
        lock: SessionLock,
        event_bus: EventBus,
        client: CompletionClient | None = None,
        repair_result: RepairResult | None = None,
    ) -> None:
        self._session_id = session_id
        self._model = model
        self._config = config
        self._store = store
        self._lock = lock
        self._event_bus = event_bus
        self._client = client
        self._owns_client = False
        self._compactor: Compactor | None = None
        self._assembler = PayloadAssembler()
        self._repair_result = repair_result or RepairResult()
        self._closed = False
        self._logger = structlog.get_logger("hypomnema.session").bind(session_id=session_id)

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    @classmethod
    async def create(
        cls,
        *,
        model: str | None = None,
        config: HypomnemaConfig | None = None,
        db_path: str | None = None,
        title: str | None = None,
        client: CompletionClient | None = None,
        event_bus: EventBus | None = None,
    ) -> HypomnemaSession:
        """
        Create a new, empty session and take its lock.

        Args:
            model: Model for conversation turns. Defaults to ``config.client.model``.
            config: Hypomnema configuration. Defaults to ``HypomnemaConfig()``.
            db_path: Override database path (useful for testing).
            title: Optional human-readable title shown in session listings.
            client: Completion client. Defaults to ``AnthropicClient.from_env()``,
                built on first use.
            event_bus: Bus to publish on. A private one is created if omitted.

        Raises:
            ValueError: If both ``db_path`` and ``config.store.db_path`` are supplied.
            StorageIOError: If the database cannot be opened.
        """
        cfg = _resolve_config(config, db_path)
        model = model or cfg.client.model
        bus = event_bus or EventBus()
        store = await _open_store(cfg)
        session_id = make_id("sess")
        try:
            lock = _lock(store, session_id)
        except BaseException:
            await store.close()
            raise
        try:
            await store.create_session(session_id, model_id=model, title=title)
        except BaseException:
            lock.release()
            await store.close()
            raise

        session = cls(session_id, model, cfg, store, lock, bus, client)
        bus.publish(HypomnemaEvent.SESSION_CREATED, {"session_id": session_id, "model": model})
        session._logger.info("session_created", model=model)
        return session

    @classmethod
    async def load(
        cls,
        session_id: str,
        *,
        config: HypomnemaConfig | None = None,
        db_path: str | None = None,
        client: CompletionClient | None = None,
        event_bus: EventBus | None = None,
    ) -> HypomnemaSession:
        """
        Open an existing session, take its lock and repair it.

        The next sequence is moved past every stored record before repair
        runs, so sequences deleted by repair are never reused.

        Raises:
            SessionNotFoundError: If the session does not exist.
            SessionBusyError: If the session is open elsewhere.
        """
        cfg = _resolve_config(config, db_path)
        bus = event_bus or EventBus()
        store = await _open_store(cfg)
        lock: SessionLock | None = None
        try:
            info = await store.get_session(session_id)
            lock = _lock(store, session_id)
            await store.sync_next_sequence(session_id)
            records = await store.list_records(session_id)
            result = RepairEngine().repair(records)
            await store.apply_repair(session_id, result)
        except BaseException:
            if lock is not None:
                lock.release()
            await store.close()
            raise

        model = info.model_id or cfg.client.model
        session = cls(session_id, model, cfg, store, lock, bus, client, repair_result=result)
        if result.changed:
            bus.publish(
                HypomnemaEvent.REPAIR_COMPLETED,
                {
                    "session_id": session_id,
                    "removed": result.removed,
                    "merged": result.merged,
                    "orphans_removed": result.orphans_removed,
                },
            )
        bus.publish(
            HypomnemaEvent.SESSION_LOADED,
            {"session_id": session_id, "model": model, "record_count": len(result.records)},
        )
        session._logger.info(
            "session_loaded",
            model=model,
            records=len(result.records),
            repaired=result.changed,
        )
        return session

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        session_id: str | None = None,
        *,
        model: str | None = None,
        config: HypomnemaConfig | None = None,
        db_path: str | None = None,
        title: str | None = None,
        client: CompletionClient | None = None,
        event_bus: EventBus | None = None,
    ) -> AsyncGenerator[HypomnemaSession, None]:
        """
        Load ``session_id``, or create a new session when it is None, and
        close it when the ``async with`` block exits, even on exception.
        """
        if session_id is None:
            session = await cls.create(
                model=model,
                config=config,
                db_path=db_path,
                title=title,
                client=client,
                event_bus=event_bus,
            )
        else:
            session = await cls.load(
                session_id,
                config=config,
                db_path=db_path,
                client=client,
                event_bus=event_bus,
            )
        try:
            yield session
        finally:
            await session.close()

    @classmethod
    async def list_sessions(
        cls,
        *,
        config: HypomnemaConfig | None = None,
        db_path: str | None = None,
        limit: int = 100,
    ) -> list[SessionSummary]:
        """List stored sessions, most recently updated first."""
        store = await _open_store(_resolve_config(config, db_path))
        try:
            return await store.list_all(limit=limit)
        finally:
            await store.close()

    @classmethod
    async def delete(
        cls,
        session_id: str,
        *,
        config: HypomnemaConfig | None = None,
        db_path: str | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        """
        Permanently delete a session that is not currently open.

        Raises:
            SessionNotFoundError: If the session does not exist.
            SessionBusyError: If the session is open elsewhere.
        """
        store = await _open_store(_resolve_config(config, db_path))
        try:
            with _lock(store, session_id):
                await store.delete_session(session_id)
        finally:
            await store.close()
        if event_bus is not None:
            event_bus.publish(HypomnemaEvent.SESSION_DELETED, {"session_id": session_id})

    async def close(self) -> None:
        """
        Release the session lock and the database connection.

        Publishes :attr:`HypomnemaEvent.SESSION_CLOSED`. Safe to call twice.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if self._owns_client and isinstance(self._client, AnthropicClient):
                await self._client.aclose()
        finally:
            self._lock.release()
            await self._store.close()
        self._event_bus.publish(HypomnemaEvent.SESSION_CLOSED, {"session_id": self._session_id})
        self._logger.info("session_closed")

    async def __aenter__(self) -> HypomnemaSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ── Records ────────────────────────────────────────────────────────────────

    async def append(
        self,
        speaker: Speaker,
        text: str | None = None,
        tool_requests: Sequence[ToolRequest] | None = None,
        tool_results: Sequence[ToolResult] | None = None,
    ) -> int:
        """
        Durably append one record and return its sequence.

        Raises:
            InvalidRecordError: If the payload combination is not allowed.
            StorageIOError: If the write fails. The record does not exist.
        """
        sequence = await self._store.append(
            self._session_id,
            speaker,
            text=text,
            tool_requests=tool_requests,
            tool_results=tool_results,
        )
        self._event_bus.publish(
            HypomnemaEvent.RECORD_APPENDED,
            {"session_id": self._session_id, "sequence": sequence, "speaker": speaker},
        )
        return sequence

    async def records(self) -> list[MessageRecord]:
        """All records of the session in ascending sequence order."""
        return await self._store.list_records(self._session_id)

    async def estimate_size(self) -> int:
        """Summed stored size of all records, in bytes."""
        return await self._store.estimate_size(self._session_id)

    async def payload(self) -> list[dict[str, Any]]:
        """The ``messages`` array for the next completion request."""
        return self._assembler.build(await self.records())

    async def summary_log(self) -> list[SummaryLogEntry]:
        return await self._store.get_summary_log(self._session_id)

    async def snapshot(self, kind: SnapshotKind) -> Any | None:
        """The last diagnostic request or response body, if any."""
        return await self._store.get_snapshot(self._session_id, kind)

    # ── Turns ──────────────────────────────────────────────────────────────────

    async def send(
        self,
        user_text: str,
        *,
        tools: list[dict[str, Any]] | None = None,
        tool_executor: ToolExecutor | None = None,
        system_prompt: str | None = None,
    ) -> TurnResult:
        """
        Run one user turn, including every tool round it triggers.

        Each round assembles the payload from the stored records, calls the
        completion service and stores the assistant record. Tool requests are
        executed through ``tool_executor`` and their (truncated) outputs are
        stored as a single tool-result record. The turn ends when the
        assistant stops asking for tools or ``max_tool_rounds`` is reached.
        Automatic compaction runs afterwards when the session has grown past
        the threshold.

        Args:
            user_text: The user's message.
            tools: Tool definitions offered to the model.
            tool_executor: ``executor(tool_name, tool_input) -> str``, sync or async.
            system_prompt: Optional system prompt for this turn.

        Returns:
            TurnResult with the final assistant text and the appended sequences.

        Raises:
            RemoteServiceError: If a completion call fails. Records already
                appended during the turn stay; nothing partial is written.
            StorageIOError: If an append fails. When the tool-result record
                cannot be stored (or the turn is cancelled while tools run),
                the assistant record holding the requests is deleted again.
        """
        cfg = self._config
        client = self.client
        appended = [await self.append("user", text=user_text)]
        final_text = ""
        stop_reason: str | None = None
        tool_calls = 0
        stripped = 0

        for round_no in range(1, cfg.max_tool_rounds + 1):
            messages = await self.payload()
            await self._store.save_snapshot(
                self._session_id,
                "request",
                {
                    "model": self._model,
                    "max_tokens": cfg.client.max_tokens,
                    "system": system_prompt,
                    "tools": tools,
                    "messages": messages,
                },
            )
            response = await client.create(
                model=self._model,
                max_tokens=cfg.client.max_tokens,
                messages=messages,
                tools=tools,
                system=system_prompt,
            )
            await self._store.save_snapshot(self._session_id, "response", response.model_dump())
            stop_reason = response.stop_reason

            uses = response.tool_uses
            if uses and stop_reason != "tool_use":
                stripped += len(uses)
                self._logger.warning(
                    "tool_use_stripped", stop_reason=stop_reason, count=len(uses)
                )
                uses = []

            text = response.text or None
            requests = [
                ToolRequest(
                    request_id=block.id or make_id("toolu"),
                    tool_name=block.name or "",
                    tool_input=block.input if block.input is not None else {},
                )
                for block in uses
            ]
            if text is None and not requests:
                self._logger.warning("empty_assistant_response", stop_reason=stop_reason)
                break

            assistant_seq = await self.append("assistant", text=text, tool_requests=requests)
            appended.append(assistant_seq)
            if text is not None:
                final_text = text
            if not requests:
                break

            try:
                results = [await self._run_tool(req, tool_executor) for req in requests]
                appended.append(await self.append("user", tool_results=results))
            except BaseException:
                await self._drop_unanswered(assistant_seq)
                raise
            tool_calls += len(requests)

            if round_no == cfg.max_tool_rounds:
                self._logger.warning("tool_round_limit_reached", rounds=round_no)

        compaction, compaction_error = await self._auto_compact()
        return TurnResult(
            text=final_text,
            stop_reason=stop_reason,
            appended=appended,
            tool_calls=tool_calls,
            stripped_tool_requests=stripped,
            compaction=compaction,
            compaction_error=compaction_error,
        )

    async def _drop_unanswered(self, sequence: int) -> None:
        # Leaves the open session without a request that has no results.
        try:
            await self._store.delete_records(self._session_id, [sequence])
        except StorageIOError as exc:
            self._logger.error("unanswered_request_drop_failed", sequence=sequence, error=str(exc))
            return
        self._logger.warning("unanswered_request_dropped", sequence=sequence)

    async def _run_tool(
        self, request: ToolRequest, executor: ToolExecutor | None
    ) -> ToolResult:
        if executor is None:
            output = f"Error: no executor available for tool {request.tool_name!r}"
        else:
            output = await run_tool(executor, request.tool_name, request.tool_input)

        limit = self._config.max_tool_output_bytes
        original_bytes = len(output.encode("utf-8"))
        output, truncated = truncate_tool_output(output, limit)
        if truncated:
            self._logger.info(
                "tool_output_truncated",
                request_id=request.request_id,
                original_bytes=original_bytes,
            )
            self._event_bus.publish(
                HypomnemaEvent.TOOL_OUTPUT_TRUNCATED,
                {
                    "session_id": self._session_id,
                    "request_id": request.request_id,
                    "original_bytes": original_bytes,
                    "kept_bytes": limit,
                },
            )
        return ToolResult(request_id=request.request_id, output=output)

    async def _auto_compact(self) -> tuple[CompactionResult | None, str | None]:
        compactor = self.compactor
        size = await self.estimate_size()
        if not compactor.should_compact(size):
            return None, None

        threshold = self._config.compaction.threshold_bytes
        self._logger.info("compaction_triggered", size_bytes=size, threshold_bytes=threshold)
        self._event_bus.publish(
            HypomnemaEvent.COMPACTION_TRIGGERED,
            {"session_id": self._session_id, "size_bytes": size, "threshold_bytes": threshold},
        )
        try:
            return await compactor.compact(self._session_id), None
        except RemoteServiceError as exc:
            return None, str(exc)

    async def compact(self) -> CompactionResult:
        """
        Compact the session now, regardless of its size.

        Raises:
            RemoteServiceError: If summarisation fails. The session is unchanged.
        """
        self._event_bus.publish(
            HypomnemaEvent.COMPACTION_TRIGGERED,
            {
                "session_id": self._session_id,
                "size_bytes": await self.estimate_size(),
                "threshold_bytes": self._config.compaction.threshold_bytes,
            },
        )
        return await self.compactor.compact(self._session_id)

    # ── Properties ─────────────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        """The session ID."""
        return self._session_id

    @property
    def model(self) -> str:
        return self._model

    @property
    def config(self) -> HypomnemaConfig:
        return self._config

    @property
    def repair_result(self) -> RepairResult:
        """What the repair pass did when the session was loaded."""
        return self._repair_result

    @property
    def client(self) -> CompletionClient:
        """The completion client, built from the environment on first use."""
        if self._client is None:
            self._client = AnthropicClient.from_env(self._config.client)
            self._owns_client = True
        return self._client

    @property
    def compactor(self) -> Compactor:
        if self._compactor is None:
            self._compactor = Compactor(
                self._store,
                self.client,
                self._config,
                model=self._model,
                event_bus=self._event_bus,
            )
        return self._compactor

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def subscribe(self, event: HypomnemaEvent, handler: Handler) -> None:
        """Shorthand for ``session.event_bus.subscribe(event, handler)``."""
        self._event_bus.subscribe(event, handler)
