from __future__ import annotations

import json
import logging

from aiohttp import WSMsgType, web

from relay.config import RelayConfig
from relay.hub import BridgeHub
from relay.protocol import Outbox, connection_ack, decode_message, parse_bridge_key

log = logging.getLogger(__name__)

HUB_KEY = web.AppKey("bridge_hub", BridgeHub)


class BridgeService:
    def __init__(self, hub: BridgeHub) -> None:
        self.hub = hub

    def _bridge_key(self, request: web.Request) -> str:
        bridge_key = parse_bridge_key(request.match_info.get("bridge_key", ""))
        if not self.hub.is_valid_key(bridge_key):
            raise web.HTTPUnauthorized(text="Invalid Proxycast_Key")
        return bridge_key

    async def handle_observer_ws(self, request: web.Request) -> web.WebSocketResponse:
        bridge_key = self._bridge_key(request)
        profile_key = request.query.get("profileKey") or request.query.get("profile_key")

        ws = web.WebSocketResponse(heartbeat=self.hub.config.ws_heartbeat_s)
        await ws.prepare(request)
        outbox = Outbox(ws, label="observer")
        conn = await self.hub.register_observer(
            bridge_key, profile_key, outbox, user_agent=request.headers.get("User-Agent")
        )
        outbox.send(
            connection_ack(
                "Chrome observer connected",
                clientId=conn.client_id,
                profileKey=conn.profile_key,
            )
        )
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    log.warning("Observer %s socket error: %s", conn.client_id, ws.exception())
                    break
                if msg.type != WSMsgType.TEXT:
                    continue
                payload = decode_message(msg.data)
                if payload is None:
                    continue
                try:
                    await self.hub.handle_observer_message(conn.client_id, payload)
                except Exception:
                    log.exception("Observer message handling failed for %s", conn.client_id)
        finally:
            await self.hub.unregister_observer(conn.client_id)
            await outbox.aclose()
        return ws

    async def handle_control_ws(self, request: web.Request) -> web.WebSocketResponse:
        bridge_key = self._bridge_key(request)

        ws = web.WebSocketResponse(heartbeat=self.hub.config.ws_heartbeat_s)
        await ws.prepare(request)
        outbox = Outbox(ws, label="control")
        conn = await self.hub.register_control(bridge_key, outbox, user_agent=request.headers.get("User-Agent"))
        outbox.send(connection_ack("Chrome control connected", clientId=conn.client_id))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    log.warning("Control %s socket error: %s", conn.client_id, ws.exception())
                    break
                if msg.type != WSMsgType.TEXT:
                    continue
                payload = decode_message(msg.data)
                if payload is None:
                    continue
                try:
                    await self.hub.handle_control_message(conn.client_id, payload)
                except Exception:
                    log.exception("Control message handling failed for %s", conn.client_id)
        finally:
            await self.hub.unregister_control(conn.client_id)
            await outbox.aclose()
        return ws

    async def handle_status(self, request: web.Request) -> web.Response:
        bridge_key = self._bridge_key(request)
        return web.json_response(await self.hub.status_snapshot(bridge_key))

    async def handle_command(self, request: web.Request) -> web.Response:
        bridge_key = self._bridge_key(request)
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"success": False, "error": "invalid_json"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"success": False, "error": "invalid_body"}, status=400)
        result = await self.hub.execute_api_command(bridge_key, body)
        return web.json_response(result)


def register_bridge_routes(app: web.Application, service: BridgeService) -> None:
    app.router.add_get("/proxycast-chrome-observer/{bridge_key}", service.handle_observer_ws)
    app.router.add_get("/proxycast-chrome-control/{bridge_key}", service.handle_control_ws)
    app.router.add_get("/proxycast-chrome/{bridge_key}/status", service.handle_status)
    app.router.add_post("/proxycast-chrome/{bridge_key}/command", service.handle_command)


def create_app(config: RelayConfig | None = None) -> web.Application:
    hub = BridgeHub(config)
    app = web.Application()
    app[HUB_KEY] = hub
    register_bridge_routes(app, BridgeService(hub))

    async def _shutdown(_: web.Application) -> None:
        await hub.shutdown()

    app.on_shutdown.append(_shutdown)
    return app
