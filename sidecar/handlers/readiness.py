"""Readiness inspection and recovery (CHECK_READINESS, ATTEMPT_RECOVERY)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.models.messages import AttemptRecoveryPayload, CheckReadinessPayload, MessageType
from sidecar.config.providers import ProviderConfig, ProviderRegistry
from sidecar.dispatch.context import RequestContext
from sidecar.dispatch.dispatcher import MessageDispatcher
from sidecar.dispatch.middleware import validate_payload
from sidecar.errors import SidecarError
from sidecar.hosts.base import ContextHost
from sidecar.pool.pool import WorkerContextPool

LOGGER = logging.getLogger(__name__)

READY = "READY"
LOGIN_REQUIRED = "LOGIN_REQUIRED"
NOT_READY = "NOT_READY"
TAB_NOT_OPEN = "TAB_NOT_OPEN"
ERROR = "ERROR"


@dataclass
class ReadinessHandlers:
    host: ContextHost
    pool: WorkerContextPool
    providers: ProviderRegistry
    probe_timeout_ms: int = 5000
    recovery_settle_ms: int = 1000

    def register(self, dispatcher: MessageDispatcher) -> None:
        dispatcher.register(MessageType.CHECK_READINESS, self.check_readiness)
        dispatcher.register(MessageType.ATTEMPT_RECOVERY, self.attempt_recovery)

    async def check_readiness(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(CheckReadinessPayload, ctx.message_type, payload)
        provider = self.providers.get(request.provider_key)
        return await self._inspect(provider)

    async def attempt_recovery(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(AttemptRecoveryPayload, ctx.message_type, payload)
        provider = self.providers.get(request.provider_key)
        before = await self._inspect(provider)
        if before["status"] == READY:
            return {"status": "ALREADY_READY", "message": f"{provider.display_name} is ready", "data": before}

        instance_id = before["data"].get("instanceId")
        try:
            if instance_id is None:
                context = await self.pool.acquire(provider.provider_key)
                self.pool.release(context.context_id)
            else:
                await self.host.reload(instance_id)
                await asyncio.sleep(self.recovery_settle_ms / 1000.0)
        except SidecarError as exc:
            LOGGER.warning("Recovery of %s failed: %s", provider.provider_key, exc.message)
            return {"status": "FAILED", "message": exc.message, "data": before}
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Recovery of %s failed: %s", provider.provider_key, exc)
            return {"status": "FAILED", "message": str(exc), "data": before}

        after = await self._inspect(provider)
        if after["status"] == READY:
            return {"status": "RECOVERED", "message": f"{provider.display_name} recovered", "data": after}
        return {"status": "FAILED", "message": after["message"], "data": after}

    async def _inspect(self, provider: ProviderConfig) -> Dict[str, Any]:
        try:
            instance_id = await self._locate(provider)
            if instance_id is None:
                return _status(TAB_NOT_OPEN, f"no {provider.display_name} tab is open")
            data: Dict[str, Any] = {"instanceId": instance_id}
            alive = await asyncio.wait_for(self.host.ping(instance_id), timeout=self.probe_timeout_ms / 1000.0)
            if not alive:
                return _status(NOT_READY, "tab did not answer the liveness probe", data)
            readiness = provider.readiness
            for target in readiness.login_targets:
                if await self.host.query(instance_id, provider.selectors[target]):
                    return _status(LOGIN_REQUIRED, f"{provider.display_name} requires login", data)
            missing = [
                target
                for target in readiness.ready_targets
                if not await self.host.query(instance_id, provider.selectors[target])
            ]
            if missing:
                data["missing"] = missing
                return _status(NOT_READY, f"missing elements: {', '.join(missing)}", data)
            return _status(READY, f"{provider.display_name} is ready", data)
        except asyncio.TimeoutError:
            return _status(ERROR, "readiness probe timed out")
        except SidecarError as exc:
            return _status(ERROR, exc.message)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Readiness check of %s failed", provider.provider_key, exc_info=True)
            return _status(ERROR, str(exc))

    async def _locate(self, provider: ProviderConfig) -> Optional[str]:
        context = self.pool.find_for_provider(provider.provider_key)
        if context is not None:
            return context.context_id
        instances = await self.pool.discover(provider)
        return instances[0].instance_id if instances else None


def _status(status: str, message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"status": status, "message": message, "data": dict(data or {})}
