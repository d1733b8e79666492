"""Interactive terminal sessions.

A session owns exactly one interactive environment from creation to
close.  Its lifecycle is::

    CREATED --(environment started)--> ACTIVE --(close/disconnect/idle/exit)--> CLOSING --> CLOSED

Client events (input, resize, close) go through a per-session inbox and are
handled one at a time by the session's driver task, so a resize can never
race a write.  A second task pumps output from the environment's
pseudo-terminal to the session's emitter as it arrives.  Once a session
leaves ACTIVE no more output is emitted and further input raises
:class:`InputAfterClose`.  Closed sessions are kept around for a while so
late events get that error rather than :class:`SessionNotFound`, then
evicted by the reaper.
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional

from .admission import AdmissionController
from .config import Config
from .errors import CodeRunnerError, ImageUnavailable, InputAfterClose, SessionNotFound
from .images import ImageCache
from .languages import LanguageProfile, LanguageRegistry
from .models import (
    CloseEvent,
    CreatedEvent,
    ErrorEvent,
    InputEvent,
    OutputEvent,
    ResizeEvent,
    ServerEvent,
    SessionEvent,
)
from .provisioner import EnvironmentProvisioner, IsolatedEnvironment, Mode
from .workspace import Workspace, WorkspaceManager


logger = logging.getLogger(__name__)

Emitter = Callable[[ServerEvent], Awaitable[None]]

READ_CHUNK_BYTES = 4096


class SessionState(str, enum.Enum):
    CREATED = "created"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class TerminalSession:
    def __init__(
        self,
        session_id: str,
        profile: LanguageProfile,
        emit: Emitter,
        owner: Optional[Hashable] = None,
    ) -> None:
        self.id = session_id
        self.profile = profile
        self.owner = owner
        self.state = SessionState.CREATED
        self.environment: Optional[IsolatedEnvironment] = None
        self.workspace: Optional[Workspace] = None
        self.last_activity_at = time.monotonic()
        self.closed_at: Optional[float] = None
        self.close_reason: Optional[str] = None
        self._emit = emit
        self._inbox: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self._closed = asyncio.Event()
        self._tasks: List["asyncio.Task[Any]"] = []

    @property
    def language(self) -> str:
        return self.profile.id

    def touch(self) -> None:
        self.last_activity_at = time.monotonic()

    async def emit(self, event: ServerEvent) -> None:
        await self._emit(event)

    def submit(self, event: SessionEvent) -> None:
        """Queue a client event for the driver task."""
        if isinstance(event, CloseEvent):
            self.request_close("closed by client")
            return
        if self.state is not SessionState.ACTIVE:
            raise InputAfterClose(f"Session {self.id} is {self.state.value}", session_id=self.id)
        self.touch()
        self._inbox.put_nowait(event)

    def request_close(self, reason: str) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.close_reason = reason
        if self.state is SessionState.ACTIVE:
            self.state = SessionState.CLOSING
            self._inbox.put_nowait(CloseEvent(session_id=self.id))

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _mark_closed(self) -> None:
        self.state = SessionState.CLOSED
        self.closed_at = time.monotonic()
        self._closed.set()


class TerminalSessionManager:
    """Registry and supervisor of all terminal sessions."""

    def __init__(
        self,
        config: Config,
        registry: LanguageRegistry,
        workspaces: WorkspaceManager,
        images: ImageCache,
        provisioner: EnvironmentProvisioner,
        admission: AdmissionController,
    ) -> None:
        self.config = config
        self.registry = registry
        self.workspaces = workspaces
        self.images = images
        self.provisioner = provisioner
        self.admission = admission
        self._sessions: Dict[str, TerminalSession] = {}
        self._reaper: Optional["asyncio.Task[None]"] = None

    # ---- lifecycle of the manager itself ----

    def start(self) -> None:
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap_forever(), name="terminal-reaper")

    async def shutdown(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        sessions = list(self._sessions.values())
        for session in sessions:
            session.request_close("server shutting down")
        await asyncio.gather(*(s.wait_closed() for s in sessions if s.environment is not None))

    # ---- session operations ----

    def get(self, session_id: str) -> TerminalSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(f"Unknown terminal session: {session_id}", session_id=session_id)

    def sessions(self) -> List[TerminalSession]:
        return list(self._sessions.values())

    async def create(self, language: str, emit: Emitter, owner: Optional[Hashable] = None) -> TerminalSession:
        """Provision and start a new session.

        On failure an error event is emitted, everything acquired so far is
        released and the error is re-raised; the session never becomes
        active.
        """
        try:
            profile = self.registry.lookup(language)
            session = TerminalSession(uuid.uuid4().hex, profile, emit, owner)
            await self._provision(session)
        except CodeRunnerError as exc:
            logger.warning("[terminal] session creation failed: %s", exc)
            await self._emit_quietly(
                emit,
                ErrorEvent(message=f"Failed to create terminal session: {exc.detail}", error_kind=exc.error_kind),
            )
            raise

        self._sessions[session.id] = session
        session.state = SessionState.ACTIVE
        logger.info("[terminal] session %s active (%s)", session.id, session.language)

        try:
            await self._emit_quietly(session.emit, CreatedEvent(session_id=session.id, language=session.language))
        finally:
            # Started even when the caller is cancelled here, so the session
            # is still closed by close_owned_by() or shutdown().
            session._tasks = [
                asyncio.create_task(self._drive(session), name=f"terminal-drive:{session.id}"),
                asyncio.create_task(self._pump_output(session), name=f"terminal-output:{session.id}"),
            ]
        return session

    async def _provision(self, session: TerminalSession) -> None:
        await self.admission.acquire()
        workspace = None
        env = None
        try:
            workspace = self.workspaces.acquire(session.id)
            await self.images.ensure_available(session.profile.image)
            env = await self.provisioner.provision(session.profile, workspace, Mode.INTERACTIVE)
            # Attach first so the shell's initial prompt is not lost.
            await self.provisioner.attach(env, output=True)
            await self.provisioner.start(env)
        except BaseException as exc:
            if isinstance(exc, ImageUnavailable):
                # pruned from the host; the next session pulls it again
                self.images.forget(session.profile.image)
            if env is not None:
                await self.provisioner.teardown(env)
            if workspace is not None:
                self.workspaces.release(workspace)
            self.admission.release()
            session._mark_closed()
            raise
        session.workspace = workspace
        session.environment = env

    async def dispatch(self, event: SessionEvent, owner: Optional[Hashable]) -> None:
        """Route a client event to its session.

        Only the owner that created a session may drive it.  Ids owned by
        anyone else are reported as unknown.
        """
        session = self._sessions.get(event.session_id)
        if session is None or session.owner != owner:
            raise SessionNotFound(f"Unknown terminal session: {event.session_id}", session_id=event.session_id)
        session.submit(event)

    async def close(self, session_id: str, reason: str = "closed by client") -> None:
        session = self.get(session_id)
        session.request_close(reason)
        await session.wait_closed()

    async def close_owned_by(self, owner: Hashable, reason: str = "connection dropped") -> None:
        owned = [s for s in self._sessions.values() if s.owner == owner and s.environment is not None]
        for session in owned:
            session.request_close(reason)
        await asyncio.gather(*(s.wait_closed() for s in owned))

    # ---- per-session tasks ----

    async def _drive(self, session: TerminalSession) -> None:
        env = session.environment
        assert env is not None and env.stream is not None
        try:
            while True:
                event = await session._inbox.get()
                if isinstance(event, CloseEvent):
                    break
                if isinstance(event, InputEvent):
                    try:
                        await asyncio.to_thread(env.stream.write, event.data.encode("utf-8"))
                    except OSError as exc:
                        logger.info("[terminal] %s: input channel closed (%s)", session.id, exc)
                        session.request_close("shell exited")
                elif isinstance(event, ResizeEvent):
                    try:
                        await self.provisioner.resize(env, event.rows, event.cols)
                    except CodeRunnerError as exc:
                        logger.warning("[terminal] %s: resize failed: %s", session.id, exc)
                        await self._emit_quietly(
                            session.emit,
                            ErrorEvent(session_id=session.id, message=exc.detail, error_kind=exc.error_kind),
                        )
        finally:
            await self._teardown(session)

    async def _pump_output(self, session: TerminalSession) -> None:
        env = session.environment
        assert env is not None and env.stream is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await asyncio.to_thread(env.stream.read, READ_CHUNK_BYTES)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if not text or session.state is not SessionState.ACTIVE:
                continue
            session.touch()
            try:
                await session.emit(OutputEvent(session_id=session.id, data=text))
            except Exception as exc:
                logger.info("[terminal] %s: could not deliver output (%s); closing", session.id, exc)
                session.request_close("client unreachable")
                break
        session.request_close("shell exited")

    async def _teardown(self, session: TerminalSession) -> None:
        session.state = SessionState.CLOSING
        env = session.environment
        assert env is not None
        try:
            await self.provisioner.stop(env)
        except CodeRunnerError as exc:
            logger.warning("[terminal] %s: stop failed: %s", session.id, exc)
        await self.provisioner.teardown(env)
        if session.workspace is not None:
            self.workspaces.release(session.workspace)
        self.admission.release()
        session._mark_closed()
        logger.info("[terminal] session %s closed (%s)", session.id, session.close_reason)

    # ---- idle sessions and eviction ----

    async def _reap_forever(self) -> None:
        while True:
            await asyncio.sleep(self.config.reap_interval_seconds)
            try:
                await self.reap()
            except Exception:
                logger.exception("[terminal] reaper iteration failed")

    async def reap(self, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        evict = []
        for session in list(self._sessions.values()):
            if session.state is SessionState.ACTIVE:
                if now - session.last_activity_at >= self.config.session_idle_seconds:
                    logger.info("[terminal] session %s idle; closing", session.id)
                    await self._emit_quietly(
                        session.emit,
                        ErrorEvent(
                            session_id=session.id,
                            message=f"Session closed after {self.config.session_idle_seconds:g} seconds of inactivity",
                        ),
                    )
                    session.request_close("idle timeout")
            elif session.state is SessionState.CLOSED and session.closed_at is not None:
                if now - session.closed_at >= self.config.closed_session_ttl_seconds:
                    evict.append(session.id)
        if evict:
            for session_id in evict:
                self._sessions.pop(session_id, None)
            logger.debug("[terminal] evicted %d closed sessions", len(evict))

    @staticmethod
    async def _emit_quietly(emit: Emitter, event: ServerEvent) -> None:
        try:
            await emit(event)
        except Exception as exc:
            logger.debug("[terminal] dropping %s event: %s", event.type, exc)
