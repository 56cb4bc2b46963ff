from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .errors import HybridLLMError, UnavailableError
from .types import Availability, SessionOptions, SessionState

if TYPE_CHECKING:
    from hybrid_llm.providers.base import LocalModelProvider, LocalSession

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns the single reusable session of a local model provider.

    Concurrent ``get_or_create`` calls share one in-flight creation. A failed
    creation is forgotten so that a later call can try again.
    """

    def __init__(
        self,
        provider: LocalModelProvider,
        options: SessionOptions | None = None,
    ) -> None:
        self._provider = provider
        self._options = options or SessionOptions()
        self._session: LocalSession | None = None
        self._pending: asyncio.Task[LocalSession] | None = None
        self._state = SessionState.UNINITIALIZED
        self._generation = 0

    @property
    def provider(self) -> LocalModelProvider:
        return self._provider

    @property
    def state(self) -> SessionState:
        return self._state

    async def availability(self) -> Availability:
        try:
            return Availability(await self._provider.availability())
        except Exception as exc:
            logger.warning("Local availability check failed: %s", exc)
            return Availability.UNAVAILABLE

    async def get_or_create(self) -> LocalSession:
        if self._session is not None:
            return self._session

        if self._pending is None:
            self._state = SessionState.CREATING
            task = asyncio.ensure_future(self._create(self._generation))
            task.add_done_callback(self._creation_done)
            self._pending = task

        # Shielded so one cancelled caller does not abort the shared creation.
        return await asyncio.shield(self._pending)

    async def destroy(self) -> None:
        self._generation += 1
        session, self._session = self._session, None
        self._pending = None
        self._state = SessionState.DESTROYED

        if session is not None:
            await _destroy_quietly(session)
            logger.info("Local session destroyed")

    async def _create(self, generation: int) -> LocalSession:
        status = await self.availability()
        if not status.is_ready:
            raise UnavailableError(
                message=f"Local model is not ready (status={status.value}).",
            )

        try:
            session = await self._provider.create_session(self._options)
        except HybridLLMError:
            raise
        except Exception as exc:
            raise UnavailableError(message=f"Local session creation failed: {exc}") from exc

        if generation != self._generation:
            await _destroy_quietly(session)
            raise UnavailableError(message="Local session was destroyed while it was being created.")

        self._session = session
        self._state = SessionState.READY
        logger.info("Local session created (model=%s)", getattr(self._provider, "model_name", "local"))
        return session

    def _creation_done(self, task: asyncio.Task[LocalSession]) -> None:
        failed = task.cancelled() or task.exception() is not None
        if self._pending is not task:
            return

        self._pending = None
        if failed:
            self._state = SessionState.UNINITIALIZED
            if not task.cancelled():
                logger.warning("Local session creation failed: %s", task.exception())


async def _destroy_quietly(session: LocalSession) -> None:
    try:
        await session.destroy()
    except Exception as exc:
        logger.warning("Failed to destroy local session: %s", exc)
