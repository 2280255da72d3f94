"""RESET_SESSION: start a fresh conversation in a provider context."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict

from shared.models.messages import MessageType, ResetSessionPayload
from sidecar.config.providers import ProviderRegistry
from sidecar.dispatch.context import RequestContext
from sidecar.dispatch.dispatcher import MessageDispatcher
from sidecar.dispatch.middleware import validate_payload
from sidecar.errors import BroadcastError, SidecarError
from sidecar.hosts.base import ContextHost
from sidecar.pool.pool import WorkerContextPool

LOGGER = logging.getLogger(__name__)


@dataclass
class SessionHandlers:
    host: ContextHost
    pool: WorkerContextPool
    providers: ProviderRegistry

    def register(self, dispatcher: MessageDispatcher) -> None:
        dispatcher.register(MessageType.RESET_SESSION, self.reset_session)

    async def reset_session(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(ResetSessionPayload, ctx.message_type, payload)
        provider = self.providers.get(request.provider_key)
        context = await self.pool.acquire(provider.provider_key)
        method = "steps" if provider.session_reset else "reload"
        try:
            if provider.session_reset:
                await self.host.perform(
                    context.context_id,
                    provider.session_reset,
                    variables={},
                    selectors=provider.selectors,
                )
            else:
                await self.host.reload(context.context_id)
        except SidecarError as exc:
            self.pool.mark_error(context.context_id, f"session reset failed: {exc.message}")
            raise
        except Exception as exc:  # noqa: BLE001
            self.pool.mark_error(context.context_id, "session reset failed")
            raise BroadcastError(f"session reset failed: {exc}", strategy=method) from exc
        except BaseException:
            self.pool.release(context.context_id)
            raise
        self.pool.release(context.context_id)
        session_id = str(uuid.uuid4())
        LOGGER.info("Reset session of %s on %s via %s", provider.provider_key, context.context_id, method)
        return {"newSessionId": session_id, "contextId": context.context_id, "method": method}
