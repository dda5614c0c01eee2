"""
=============================================================
WEB SERVER - FastAPI Server with Real-Time WebSocket Stream
=============================================================
HTTP surface of the digit signal engine.

Features:
- REST snapshots of signals, auto-strategy flags, bots,
  recovery state and notifications
- Action endpoints for the manual bot, signal bots, signal
  defaults and auto bots
- WebSocket endpoint forwarding event bus channels
- Bearer token authentication (DASHBOARD_SECRET)

Endpoints:
- GET  /health                         (no auth)
- GET  /api/status
- GET  /api/signals
- GET  /api/auto-strategy
- GET  /api/bots, /api/bots/{bot_id}
- GET  /api/recovery
- GET  /api/notifications
- GET  /api/history
- POST /api/manual-bot/start | stop | reset
- POST /api/signal-bots
- POST /api/signal-bots/{bot_id}/stop
- POST /api/signal-bots/reset
- PUT  /api/signal-defaults
- PUT  /api/auto-strategy
- POST /api/auto-bots/hard-stop | reset
- WS   /ws/stream?token=...

Error mapping:
- ConfigurationError          -> 400
- TradeNotAuthorizedError     -> 403
- unknown bot                 -> 404
- symbol already running /
  action refused while active -> 409
=============================================================
"""

import asyncio
import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query, Depends, HTTPException, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from bot_models import ConfigurationError, TradeNotAuthorizedError
from event_bus import Channel, EventBus
from trading import TradingEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def resolve_dashboard_secret(secret: Optional[str] = None) -> str:
    """Explicit secret, then DASHBOARD_SECRET, then a generated one."""
    if secret:
        return secret

    secret = os.environ.get("DASHBOARD_SECRET", "").strip()
    if secret:
        return secret

    secret = secrets.token_urlsafe(32)
    logger.warning("⚠️ DASHBOARD_SECRET not set, generated a token for this process")
    logger.info(f"Dashboard Access Token: {secret}")
    return secret


class ConnectionManager:
    """
    Manages WebSocket connections for real-time streaming.

    Subscribes to the EventBus channels and forwards events to all
    connected clients.
    """

    def __init__(self, bus: EventBus, secret: str):
        self.bus = bus
        self.secret = secret
        self.active_connections: Set[WebSocket] = set()
        self._event_tasks: List[asyncio.Task] = []
        self._running = False

    def verify_token(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return secrets.compare_digest(token, self.secret)

    async def connect(self, websocket: WebSocket, token: str) -> bool:
        """Accept a new WebSocket connection after verifying token."""
        if not self.verify_token(token):
            await websocket.close(code=4001, reason="Invalid token")
            return False

        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

        try:
            await websocket.send_json({"type": "snapshot", "data": self.bus.get_snapshot()})
        except Exception as e:
            logger.error(f"Failed to send initial snapshot: {e}")

        return True

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict) -> None:
        """Broadcast a message to all connected clients."""
        if not self.active_connections:
            return

        disconnected = set()
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send to client: {e}")
                disconnected.add(connection)

        for conn in disconnected:
            self.active_connections.discard(conn)

    async def start_event_forwarding(self) -> None:
        if self._running:
            return

        self._running = True
        self.bus.set_event_loop(asyncio.get_running_loop())

        for channel in Channel:
            task = asyncio.create_task(self._forward_channel(channel.value))
            self._event_tasks.append(task)

        logger.info("Started event forwarding to WebSocket clients")

    async def _forward_channel(self, channel: str) -> None:
        queue = self.bus.subscribe(channel)

        try:
            while self._running:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=1.0)
                    await self.broadcast({"type": "event", "channel": channel, "data": event})
                except asyncio.TimeoutError:
                    continue
                except Exception as e:
                    logger.error(f"Error forwarding {channel} event: {e}")
                    await asyncio.sleep(0.1)
        finally:
            self.bus.unsubscribe(channel, queue)
            logger.info(f"Stopped forwarding channel: {channel}")

    async def stop_event_forwarding(self) -> None:
        self._running = False

        for task in self._event_tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._event_tasks.clear()
        logger.info("Stopped all event forwarding")

    async def close_all(self) -> None:
        for connection in list(self.active_connections):
            try:
                await connection.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")
        self.active_connections.clear()


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return body


def _ok(data) -> JSONResponse:
    return JSONResponse(content={"success": True, "data": data})


def create_app(engine: TradingEngine, secret: Optional[str] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Trading engine served by the API
        secret: Bearer token; falls back to DASHBOARD_SECRET

    Returns:
        Configured FastAPI app instance
    """
    dashboard_secret = resolve_dashboard_secret(secret)
    manager = ConnectionManager(engine.event_bus, dashboard_secret)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await manager.start_event_forwarding()
        logger.info("Web server started")

        yield

        await manager.stop_event_forwarding()
        await manager.close_all()
        logger.info("Web server shutdown complete")

    async def get_auth_token(authorization: Optional[str] = Header(None)) -> str:
        """Extract and verify auth token from Authorization header."""
        if not authorization:
            raise HTTPException(status_code=401, detail="Missing Authorization header")

        token = authorization[7:] if authorization.startswith("Bearer ") else authorization
        if not manager.verify_token(token):
            raise HTTPException(status_code=401, detail="Invalid token")
        return token

    app = FastAPI(
        title="Deriv Digit Signal Engine",
        description="Digit signal analysis and autonomous execution",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = engine
    app.state.connections = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def root_health():
        """Health check for cloud providers (no auth required)."""
        return JSONResponse(content={
            "status": "healthy",
            "service": "deriv-digit-signals",
            "connected": engine.is_connected,
            "websocket_connections": len(manager.active_connections),
            "subscribers": engine.event_bus.get_subscriber_count(),
            "timestamp": datetime.now().isoformat()
        })

    @app.get("/", response_class=HTMLResponse)
    async def index():
        return HTMLResponse(content="""
        <!DOCTYPE html>
        <html>
        <head><title>Deriv Digit Signal Engine</title></head>
        <body>
            <h1>Deriv Digit Signal Engine</h1>
            <ul>
                <li><code>/api/signals</code> - Signal snapshots</li>
                <li><code>/api/auto-strategy</code> - Auto-strategy flags</li>
                <li><code>/api/bots</code> - Bots and trades</li>
                <li><code>/ws/stream</code> - WebSocket stream</li>
            </ul>
        </body>
        </html>
        """)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @app.get("/api/status")
    async def get_status(token: str = Depends(get_auth_token)):
        return _ok(engine.get_status())

    @app.get("/api/signals")
    async def get_signals(token: str = Depends(get_auth_token)):
        signals = engine.get_signals()
        last_update = engine.last_update
        return _ok({
            "signals": {symbol: snap.to_dict() for symbol, snap in signals.items()},
            "count": len(signals),
            "last_update": last_update.isoformat() if last_update else None,
        })

    @app.get("/api/auto-strategy")
    async def get_auto_strategy(token: str = Depends(get_auth_token)):
        snapshots = engine.get_auto_strategy()
        return _ok({
            "enabled": engine.auto_strategy_enabled,
            "symbols": {symbol: snap.to_dict() for symbol, snap in snapshots.items()},
        })

    @app.get("/api/bots")
    async def get_bots(token: str = Depends(get_auth_token)):
        bots = engine.get_bots()
        return _ok({"bots": [b.to_dict() for b in bots], "count": len(bots)})

    @app.get("/api/bots/{bot_id}")
    async def get_bot(bot_id: str, token: str = Depends(get_auth_token)):
        bot = engine.get_bot(bot_id)
        if bot is None:
            raise HTTPException(status_code=404, detail=f"Unknown bot: {bot_id}")
        return _ok(bot.to_dict())

    @app.get("/api/recovery")
    async def get_recovery(token: str = Depends(get_auth_token)):
        return _ok({"recovery": engine.get_recovery_state(), "auto_start_allowed": engine.can_start_auto()})

    @app.get("/api/notifications")
    async def get_notifications(
        limit: int = Query(default=50, ge=1, le=200),
        token: str = Depends(get_auth_token)
    ):
        items = engine.get_notifications(limit)
        return _ok({"notifications": [n.to_dict() for n in items], "count": len(items)})

    @app.get("/api/history")
    async def get_history(
        limit: int = Query(default=50, ge=1, le=200),
        token: str = Depends(get_auth_token)
    ):
        history = engine.event_bus.get_trade_history(limit=limit)
        return _ok({"trades": history, "count": len(history), "limit": limit})

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @app.post("/api/manual-bot/start")
    async def start_manual_bot(request: Request, token: str = Depends(get_auth_token)):
        body = await _read_json(request)
        try:
            bot = engine.start_manual_bot(body)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _ok(bot.to_dict())

    @app.post("/api/manual-bot/stop")
    async def stop_manual_bot(token: str = Depends(get_auth_token)):
        return _ok({"stopped": engine.stop_manual_bot()})

    @app.post("/api/manual-bot/reset")
    async def reset_manual_bot(token: str = Depends(get_auth_token)):
        if not engine.reset_manual_stats():
            raise HTTPException(status_code=409, detail="Stop the SpeedBot before resetting stats")
        return _ok({"reset": True})

    @app.post("/api/signal-bots")
    async def start_signal_bot(request: Request, token: str = Depends(get_auth_token)):
        body = await _read_json(request)
        symbol = body.get("symbol")
        if not symbol:
            raise HTTPException(status_code=400, detail="symbol is required")
        if engine.is_symbol_running(symbol):
            raise HTTPException(status_code=409, detail=f"A bot is already running on {symbol}")

        try:
            bot = engine.start_signal_bot(symbol, ticks=int(body.get("ticks", 1)))
        except TradeNotAuthorizedError as e:
            raise HTTPException(status_code=403, detail=str(e))
        except (ConfigurationError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _ok(bot.to_dict())

    @app.post("/api/signal-bots/reset")
    async def reset_signal_bots(token: str = Depends(get_auth_token)):
        return _ok({"removed": engine.reset_signal_bots()})

    @app.post("/api/signal-bots/{bot_id}/stop")
    async def stop_signal_bot(bot_id: str, token: str = Depends(get_auth_token)):
        try:
            bot = engine.stop_signal_bot(bot_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown bot: {bot_id}")
        return _ok(bot.to_dict())

    @app.put("/api/signal-defaults")
    async def set_signal_defaults(request: Request, token: str = Depends(get_auth_token)):
        body = await _read_json(request)
        try:
            defaults = engine.set_signal_defaults(**body)
        except (ConfigurationError, TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _ok(defaults.to_dict())

    @app.put("/api/auto-strategy")
    async def set_auto_strategy(request: Request, token: str = Depends(get_auth_token)):
        body = await _read_json(request)
        if not isinstance(body.get("enabled"), bool):
            raise HTTPException(status_code=400, detail="enabled must be true or false")
        engine.set_auto_strategy_enabled(body["enabled"])
        return _ok({"enabled": engine.auto_strategy_enabled})

    @app.post("/api/auto-bots/hard-stop")
    async def hard_stop(token: str = Depends(get_auth_token)):
        return _ok({"stopped": engine.hard_stop_auto_bots()})

    @app.post("/api/auto-bots/reset")
    async def reset_auto_bots(token: str = Depends(get_auth_token)):
        if not engine.reset_auto_bots():
            raise HTTPException(status_code=409, detail="Stop all Auto Bots before resetting history")
        return _ok({"reset": True})

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    @app.websocket("/ws/stream")
    async def websocket_endpoint(
        websocket: WebSocket,
        token: str = Query(...)
    ):
        """
        Real-time event stream.

        Example: ws://host:port/ws/stream?token=YOUR_TOKEN

        Message format:
        {
            "type": "snapshot" | "event" | "pong",
            "channel": "signal" | "bot" | "trade" | "notification" | "status",
            "data": {...}
        }
        """
        if not await manager.connect(websocket, token):
            return

        try:
            while True:
                try:
                    data = await websocket.receive_text()

                    if data == "ping":
                        await websocket.send_json({"type": "pong"})
                    elif data == "snapshot":
                        await websocket.send_json({"type": "snapshot", "data": engine.event_bus.get_snapshot()})
                except WebSocketDisconnect:
                    break
                except Exception as e:
                    logger.error(f"WebSocket error: {e}")
                    break
        finally:
            manager.disconnect(websocket)

    return app


async def run_server(app: FastAPI, host: str = "0.0.0.0", port: int = 8000) -> None:
    """
    Run the FastAPI server with uvicorn.

    Args:
        app: Application from create_app()
        host: Host to bind to (default: 0.0.0.0)
        port: Port to bind to (default: 8000)
    """
    import uvicorn

    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="info",
        access_log=True
    )
    server = uvicorn.Server(config)

    logger.info(f"Starting web server on http://{host}:{port}")
    await server.serve()
