"""Context host backed by a browser extension connected over WebSocket."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from shared.models.bridge import BridgeHello, BridgeRequest, BridgeResponse, BridgeSignal, parse_bridge_frame
from sidecar.config.providers import BroadcastStep
from sidecar.errors import BroadcastError, HostUnavailable
from sidecar.hosts.base import ContextHost, HostInstance, HostSignal, SignalCallback, WatchHandle, WatchSpec

LOGGER = logging.getLogger(__name__)

_ABORTED_MAX = 512


class BridgeHost(ContextHost):
    """Forwards host operations to the extension and routes its signals to watches."""

    def __init__(self, *, request_timeout_ms: int = 10000) -> None:
        self._request_timeout = request_timeout_ms / 1000.0
        self._websocket: Optional[WebSocket] = None
        self._send_lock = asyncio.Lock()
        self._pending: Dict[str, tuple[asyncio.Future, str]] = {}
        self._aborted: list[str] = []
        self._aborted_index: set[str] = set()
        self._watches: Dict[str, WatchHandle] = {}
        self._request_ids = itertools.count(1)
        self._watch_ids = itertools.count(1)
        self.agent: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    async def stop(self) -> None:
        websocket = self._websocket
        await self._detach("sidecar shutting down")
        if websocket is not None:
            try:
                await websocket.close(code=1001)
            except RuntimeError:
                LOGGER.debug("Bridge socket already closed")

    # Connection ---------------------------------------------------------------

    async def attach(self, websocket: WebSocket) -> None:
        """Serve one extension connection until it disconnects."""

        await websocket.accept()
        previous = self._websocket
        if previous is not None:
            LOGGER.warning("New bridge connection replaces the current one")
            await self._detach("bridge connection replaced")
            try:
                await previous.close(code=1012)
            except RuntimeError:
                LOGGER.debug("Previous bridge socket already closed")
        self._websocket = websocket
        LOGGER.info("Bridge connected from %s", websocket.client)
        try:
            while True:
                raw = await websocket.receive_json()
                try:
                    frame = parse_bridge_frame(raw)
                except ValidationError:
                    LOGGER.warning("Discarding malformed bridge frame: %s", raw)
                    continue
                self._route(frame)
        except WebSocketDisconnect:
            LOGGER.info("Bridge disconnected")
        except Exception:
            LOGGER.exception("Bridge connection encountered an error; closing it")
            try:
                await websocket.close(code=1011)
            except RuntimeError:
                LOGGER.debug("Bridge socket already closed")
        finally:
            if self._websocket is websocket:
                await self._detach("bridge disconnected")

    def _route(self, frame: BridgeResponse | BridgeSignal | BridgeHello) -> None:
        if isinstance(frame, BridgeResponse):
            self._handle_response(frame)
        elif isinstance(frame, BridgeSignal):
            self._handle_signal(frame)
        else:
            self.agent = frame.agent
            LOGGER.info("Bridge agent %s (version %s) ready", frame.agent, frame.version or "unknown")

    async def _detach(self, reason: str) -> None:
        self._websocket = None
        pending, self._pending = self._pending, {}
        if pending:
            LOGGER.debug("Failing %s pending bridge requests: %s", len(pending), reason)
        for request_id, (future, op) in pending.items():
            if not future.done():
                future.set_exception(HostUnavailable(f"bridge request {op} aborted: {reason}"))
            self._track_aborted(request_id)
        watches, self._watches = self._watches, {}
        for handle in watches.values():
            await handle.dispose()

    # Request/response ---------------------------------------------------------

    async def _request(self, op: str, **args: Any) -> Any:
        websocket = self._websocket
        if websocket is None:
            raise HostUnavailable("no browser bridge connected")
        request_id = f"req-{next(self._request_ids)}"
        frame = BridgeRequest(id=request_id, op=op, args=args)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (future, op)
        try:
            async with self._send_lock:
                await websocket.send_json(frame.model_dump(by_alias=True))
        except Exception as exc:
            self._pending.pop(request_id, None)
            raise HostUnavailable(f"failed to send bridge request {op}") from exc

        try:
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError as exc:
            future.cancel()
            self._track_aborted(request_id)
            raise HostUnavailable(f"bridge request {op} timed out") from exc
        except asyncio.CancelledError:
            future.cancel()
            self._track_aborted(request_id)
            raise
        finally:
            self._pending.pop(request_id, None)

    def _handle_response(self, response: BridgeResponse) -> None:
        entry = self._pending.pop(response.id, None)
        if entry is None:
            if self._pop_aborted(response.id):
                LOGGER.debug("Ignored late bridge response for aborted request %s", response.id)
            else:
                LOGGER.warning("Received bridge response with no pending request %s", response.id)
            return
        future, op = entry
        if future.done():
            return
        if response.ok:
            future.set_result(response.result)
            return
        message = response.error or f"bridge request {op} failed"
        if op == "perform":
            future.set_exception(BroadcastError(message))
        else:
            future.set_exception(HostUnavailable(message, details={"op": op}))

    def _handle_signal(self, frame: BridgeSignal) -> None:
        handle = self._watches.get(frame.watch_id)
        if handle is None:
            LOGGER.debug("Dropping %s signal for unknown watch %s", frame.signal, frame.watch_id)
            return
        handle.deliver(HostSignal(kind=frame.signal, instance_id=frame.instance_id, data=frame.data))

    def _track_aborted(self, request_id: str) -> None:
        if request_id in self._aborted_index:
            return
        self._aborted.append(request_id)
        self._aborted_index.add(request_id)
        if len(self._aborted) > _ABORTED_MAX:
            oldest = self._aborted.pop(0)
            self._aborted_index.discard(oldest)

    def _pop_aborted(self, request_id: str) -> bool:
        if request_id not in self._aborted_index:
            return False
        self._aborted_index.discard(request_id)
        try:
            self._aborted.remove(request_id)
        except ValueError:
            pass
        return True

    # ContextHost --------------------------------------------------------------

    async def find_instances(self, url_prefix: str) -> list[HostInstance]:
        result = await self._request("find", urlPrefix=url_prefix)
        return [_instance_from_wire(item) for item in result or []]

    async def open(self, url: str, *, background: bool = True) -> HostInstance:
        result = await self._request("open", url=url, active=not background, pinned=background)
        return _instance_from_wire(result)

    async def is_loaded(self, instance_id: str) -> bool:
        result = await self._request("status", instanceId=instance_id)
        return bool(result and result.get("loaded"))

    async def ping(self, instance_id: str) -> bool:
        result = await self._request("ping", instanceId=instance_id)
        return result == "pong" or result is True

    async def close(self, instance_id: str) -> None:
        await self._request("close", instanceId=instance_id)

    async def reload(self, instance_id: str) -> None:
        await self._request("reload", instanceId=instance_id)

    async def perform(
        self,
        instance_id: str,
        steps: Sequence[BroadcastStep],
        *,
        variables: Mapping[str, str],
        selectors: Mapping[str, Sequence[str]],
    ) -> None:
        await self._request(
            "perform",
            instanceId=instance_id,
            steps=[step.model_dump() for step in steps],
            variables=dict(variables),
            selectors={name: list(group) for name, group in selectors.items()},
        )

    async def query(self, instance_id: str, selectors: Sequence[str]) -> int:
        result = await self._request("query", instanceId=instance_id, selectors=list(selectors))
        return int(result or 0)

    async def extract_text(self, instance_id: str, selectors: Sequence[str]) -> Optional[str]:
        result = await self._request("extract", instanceId=instance_id, selectors=list(selectors))
        return result if isinstance(result, str) else None

    async def watch(self, instance_id: str, spec: WatchSpec, callback: SignalCallback) -> WatchHandle:
        handle = WatchHandle(
            f"w-{next(self._watch_ids)}",
            instance_id,
            spec,
            callback,
            on_dispose=self._stop_watch,
        )
        self._watches[handle.watch_id] = handle
        try:
            await self._request("watch.start", watchId=handle.watch_id, instanceId=instance_id, spec=spec.to_wire())
        except BaseException:
            self._watches.pop(handle.watch_id, None)
            raise
        return handle

    async def _stop_watch(self, handle: WatchHandle) -> None:
        self._watches.pop(handle.watch_id, None)
        if self._websocket is None:
            return
        await self._request("watch.stop", watchId=handle.watch_id)


def _instance_from_wire(item: Mapping[str, Any]) -> HostInstance:
    return HostInstance(
        instance_id=str(item["instanceId"]),
        url=item.get("url"),
        title=item.get("title"),
        loaded=bool(item.get("loaded", False)),
    )
