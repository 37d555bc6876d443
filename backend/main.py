from __future__ import annotations

import argparse
import asyncio
import csv
import io
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Iterable, List, Optional, Set

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from classify import (
    address_series,
    direction_series,
    interface_speed,
    protocol_series,
    rate,
    to_display,
    total,
)
from config import Settings
from errors import NetViewError, NoDataError, NotConnectedError, ProtocolError
from models import DataSet, InterfaceSnapshot, PacketHeader
from reconnect import ReconnectSupervisor
from signals import Signal
from sync import SyncSupervisor

log = logging.getLogger("netview")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def dump_data(data: DataSet) -> dict:
    return {name: snapshot.model_dump(mode="json") for name, snapshot in data.items()}


class ViewerManager:
    """Dashboard websocket clients; their presence drives the visibility signal."""

    def __init__(self, visibility: Optional[Signal] = None):
        self.active_connections: List[WebSocket] = []
        self._visibility = visibility
        self._sending: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.append(websocket)
        self._update()

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        self._update()

    def _update(self) -> None:
        if self._visibility is not None:
            self._visibility.set(bool(self.active_connections))

    async def broadcast(self, message: str) -> None:
        for connection in self.active_connections[:]:
            try:
                await connection.send_text(message)
            except Exception:
                self.disconnect(connection)

    def publish(self, data: DataSet) -> None:
        if not self.active_connections:
            return
        task = asyncio.get_running_loop().create_task(self.broadcast(json.dumps(dump_data(data))))
        self._sending.add(task)
        task.add_done_callback(self._sending.discard)


async def listen_configured(sync: SyncSupervisor, names: Iterable[str]) -> None:
    for name in names:
        try:
            await sync.listen_interface(name)
        except NetViewError as e:
            log.warning("Could not listen on %s: %s", name, e)


def create_app(
    settings: Optional[Settings] = None,
    sync: Optional[SyncSupervisor] = None,
    reconnect: Optional[ReconnectSupervisor] = None,
    connect=None,
) -> FastAPI:
    """Build the dashboard API around a sync and a reconnect supervisor.

    With ``sync`` given and no ``connect``, no reconnect supervisor is
    created and the caller owns the channel.
    """
    settings = settings or Settings()
    visibility = Signal(not settings.pause_when_idle)
    dark_mode = Signal(False)
    supervise = sync is None or connect is not None
    if sync is None:
        sync = SyncSupervisor(visibility=visibility, interval=settings.poll_interval)
    viewers = ViewerManager(visibility if settings.pause_when_idle else None)
    pending: Set[asyncio.Task] = set()

    def on_open(channel) -> None:
        sync.attach(channel)
        if settings.listen:
            task = asyncio.get_running_loop().create_task(listen_configured(sync, settings.listen))
            pending.add(task)
            task.add_done_callback(pending.discard)

    if reconnect is None and supervise:
        reconnect = ReconnectSupervisor(
            connect=connect or settings.connector(),
            on_open=on_open,
            on_close=sync.detach,
            delay=settings.reconnect_delay,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        unsubscribe = sync.subscribe(viewers.publish)
        if reconnect is not None:
            reconnect.start()
        log.info("NetView client started (server=%s)", settings.server_url)
        yield
        unsubscribe()
        if reconnect is not None:
            await reconnect.stop()
        await sync.close()
        for task in list(pending):
            task.cancel()

    app = FastAPI(title="NetView", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.sync = sync
    app.state.reconnect = reconnect
    app.state.visibility = visibility
    app.state.dark_mode = dark_mode
    app.state.viewers = viewers

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotConnectedError)
    async def not_connected(request: Request, exc: NotConnectedError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(NoDataError)
    async def no_data(request: Request, exc: NoDataError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(ProtocolError)
    async def bad_response(request: Request, exc: ProtocolError):
        return JSONResponse(status_code=502, content={"detail": "Malformed server response"})

    def snapshot_of(name: str) -> InterfaceSnapshot:
        snapshot = sync.data.get(name)
        if snapshot is None:
            raise HTTPException(404, f"Interface {name} is not listened.")
        return snapshot

    @app.get("/api/health")
    def health():
        return {
            "status": "ok",
            "timestamp": time.time(),
            "connection": reconnect.state.value if reconnect is not None else None,
            "retries": reconnect.retries if reconnect is not None else 0,
            "polling": sync.polling,
            "cycles": sync.cycles,
            "failures": sync.failures,
            "last_error": sync.last_error,
            "dark_mode": dark_mode.value,
        }

    @app.get("/api/interfaces")
    async def list_interfaces():
        return {"interfaces": await sync.get_interfaces()}

    @app.get("/api/data")
    def get_data():
        return dump_data(sync.data)

    @app.get("/api/overview")
    def overview():
        interfaces = []
        all_speed = 0.0
        for name, snapshot in sync.data.items():
            speed = interface_speed(snapshot)
            if speed is not None:
                all_speed += speed
            interfaces.append({
                "name": name,
                "mac": snapshot.mac,
                "closed": snapshot.closed,
                "speed": speed,
                "display": "offline" if snapshot.closed else to_display(speed),
                **direction_series(snapshot),
            })
        return {"speed": all_speed, "display": to_display(all_speed), "interfaces": interfaces}

    @app.get("/api/interfaces/{name}/protocols")
    def protocols(name: str):
        snapshot = snapshot_of(name)
        return {
            bucket.value: {
                "upload_rate": rate(series["upload"]),
                "download_rate": rate(series["download"]),
                **series,
            }
            for bucket, series in protocol_series(snapshot).items()
        }

    @app.get("/api/interfaces/{name}/addresses")
    def addresses(name: str, kind: str = "ip"):
        if kind not in ("ip", "mac"):
            raise HTTPException(400, "kind must be 'ip' or 'mac'")
        snapshot = snapshot_of(name)
        rows = []
        for address, series in address_series(snapshot, kind).items():
            rows.append({
                "address": address,
                "own": kind == "mac" and address == snapshot.mac,
                "total": total(series["upload"]) + total(series["download"]),
                "upload_rate": rate(series["upload"]),
                "download_rate": rate(series["download"]),
                **series,
            })
        rows.sort(key=lambda row: (-row["total"], row["address"]))
        return {"kind": kind, "addresses": rows}

    @app.post("/api/interfaces/{name}/listen")
    async def listen(name: str):
        await sync.listen_interface(name)
        return {"status": "listening", "interface": name}

    @app.post("/api/interfaces/{name}/unlisten")
    async def unlisten(name: str):
        await sync.not_listen_interface(name)
        return {"status": "closed", "interface": name}

    @app.delete("/api/interfaces/{name}")
    async def clear(name: str):
        await sync.clear_interface(name)
        return {"status": "cleared", "interface": name}

    @app.post("/api/reconnect")
    async def force_reconnect():
        if reconnect is None:
            raise NotConnectedError()
        reconnect.refresh()
        return {"connection": reconnect.state.value}

    @app.post("/api/dark-mode")
    def set_dark_mode(enabled: bool):
        dark_mode.set(enabled)
        return {"dark_mode": dark_mode.value}

    @app.get("/api/export")
    def export_history(format: str = "json"):
        data = sync.data

        if format == "csv":
            buf = io.StringIO()
            writer = csv.writer(buf)
            writer.writerow([
                "Interface", "Timestamp", "EtherType", "Source MAC", "Destination MAC",
                "IP Protocol", "Source IP", "Destination IP", "Bytes",
            ])
            for name, snapshot in data.items():
                for timestamp, counters in snapshot.history:
                    for key, size in counters.items():
                        try:
                            header = PacketHeader.from_key(key)
                        except ValueError:
                            continue
                        ip = header.ip_header
                        writer.writerow([
                            name,
                            timestamp,
                            header.protocol,
                            header.source,
                            header.destination,
                            ip.protocol if ip else "",
                            ip.source if ip else "",
                            ip.destination if ip else "",
                            size,
                        ])
            buf.seek(0)
            return StreamingResponse(
                buf,
                media_type="text/csv",
                headers={"Content-Disposition": "attachment; filename=netview_history.csv"},
            )

        return StreamingResponse(
            io.BytesIO(json.dumps(dump_data(data), indent=2).encode()),
            media_type="application/json",
            headers={"Content-Disposition": "attachment; filename=netview_history.json"},
        )

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await viewers.connect(ws)
        try:
            await ws.send_json(dump_data(sync.data))
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            viewers.disconnect(ws)

    return app


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="NetView: live per-interface traffic client")
    p.add_argument("-s", "--server", dest="server_url", help="capture server websocket URL")
    p.add_argument("--host", help="dashboard API bind address")
    p.add_argument("-p", "--port", type=int, help="dashboard API port")
    p.add_argument("-l", "--listen", action="append", help="interface to listen on (repeatable)")
    p.add_argument("--verify-tls", action="store_true", default=None, help="verify the server certificate")
    p.add_argument("--always-poll", dest="pause_when_idle", action="store_false", default=None,
                   help="keep polling while no dashboard viewer is connected")
    p.add_argument("--log-level", help="logging level (default: INFO)")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    import uvicorn

    args = build_argparser().parse_args(argv)
    settings = Settings.from_env(**vars(args))
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
