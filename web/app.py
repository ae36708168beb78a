"""Embedded web dashboard API for Crowdtune.

Shares the bot process and reads straight from its SyncContext. Started when
the WEB_PORT env var is set.
"""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import TYPE_CHECKING

import aiohttp.web as web

if TYPE_CHECKING:
    from crowdtune.context import SyncContext

log = logging.getLogger(__name__)

routes = web.RouteTableDef()


def _ctx(request: web.Request) -> SyncContext:
    return request.app["ctx"]


def _track(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "url": t.url,
        "duration_ms": t.duration_ms,
    }


# ── Health ───────────────────────────────────────────────────────────────

@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    ctx = _ctx(request)
    return web.json_response({
        "status": "ok",
        "state": ctx.coordinator.state.name,
        "pending_operations": ctx.operations.pending,
        "current_operation": ctx.operations.current,
        "watching": ctx.watcher.running,
    })


# ── Queue ────────────────────────────────────────────────────────────────

@routes.get("/api/queue")
async def get_queue(request: web.Request) -> web.Response:
    ctx = _ctx(request)
    current = ctx.coordinator.current
    return web.json_response({
        "now_playing": {
            "track_ref": current.track_ref,
            "title": current.title,
            "progress_ms": current.progress_ms,
            "duration_ms": current.duration_ms,
        } if current else None,
        "queue": [asdict(song) for song in ctx.coordinator.get_queue()],
    })


@routes.post("/api/skip")
async def skip(request: web.Request) -> web.Response:
    ctx = _ctx(request)
    try:
        body = await request.json()
    except ValueError:
        body = {}
    count = body.get("count", 1)
    if not isinstance(count, int) or not 1 <= count <= 5:
        raise web.HTTPBadRequest(text="count must be 1-5")
    skipped = await ctx.coordinator.skip(count)
    if not skipped:
        raise web.HTTPBadRequest(text="Nothing to skip")
    return web.json_response({"status": "skipped", "skipped": skipped})


# ── Playlists ────────────────────────────────────────────────────────────

@routes.get("/api/playlists")
async def get_playlists(request: web.Request) -> web.Response:
    ctx = _ctx(request)
    tracks = await ctx.playlists.get_playlist_tracks()
    if tracks is None:
        raise web.HTTPServiceUnavailable(text="Spotify unavailable")
    return web.json_response({
        "active": {
            "id": ctx.playlists.active_playlist_id,
            "name": ctx.playlists.active_name,
            "tracks": [_track(t) for t in tracks.active],
        },
        "overflow": {
            "id": ctx.playlists.overflow_playlist_id,
            "name": ctx.playlists.overflow_name,
            "tracks": [_track(t) for t in tracks.overflow],
        },
    })


# ── Server lifecycle ─────────────────────────────────────────────────────

def create_app(ctx: SyncContext) -> web.Application:
    app = web.Application()
    app["ctx"] = ctx
    app.router.add_routes(routes)
    return app


async def start_web_server(ctx: SyncContext, port: int = 8080) -> web.AppRunner:
    runner = web.AppRunner(create_app(ctx))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    return runner
