"""FastAPI application for the two-party rendezvous relay."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .core.config import Settings, get_settings
from .core.exceptions import MalformedPayload, PayloadTooLarge, RateLimited, RelayException
from .routers import rooms
from .services.rate_limit import RateLimiter
from .services.reaper import Reaper
from .services.room_store import RoomStore

logger = logging.getLogger(__name__)

HTML_PAGE = """<!DOCTYPE html>
<html lang=\"en\">
<head>
    <meta charset=\"UTF-8\" />
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1.0\" />
    <title>Rendezvous Call</title>
    <script src=\"https://cdn.tailwindcss.com\"></script>
</head>
<body class=\"min-h-screen bg-slate-950 text-slate-100\">
    <main class=\"mx-auto max-w-xl px-6 py-16 text-center\">
        <h1 class=\"text-2xl font-semibold\">Private audio call</h1>
        <p id=\"status\" class=\"mt-4 min-h-[1.5rem] text-sm text-slate-400\"></p>
        <div class=\"mt-8 flex justify-center gap-4\">
            <button id=\"copyBtn\" class=\"rounded-full bg-emerald-500 px-5 py-3 text-sm font-semibold text-black hover:bg-emerald-400\">Create link</button>
            <button id=\"endBtn\" class=\"hidden rounded-full border border-rose-400/60 px-5 py-3 text-sm font-semibold text-rose-300 hover:bg-rose-400/10\">End call</button>
        </div>
    </main>

    <script>
        const API = '__API_PREFIX__/rooms';
        const TTL_MS = __TTL_MS__;
        const ICE = [{ urls: 'stun:stun.l.google.com:19302' }];
        const statusEl = document.getElementById('status');
        const copyBtn = document.getElementById('copyBtn');
        const endBtn = document.getElementById('endBtn');

        let pc = null;
        let localStream = null;
        let ended = false;

        function setStatus(text) {
            statusEl.textContent = text;
        }

        function release() {
            if (pc) {
                pc.onconnectionstatechange = null;
                pc.close();
                pc = null;
            }
            if (localStream) {
                localStream.getTracks().forEach((track) => track.stop());
                localStream = null;
            }
        }

        function showCallControls() {
            copyBtn.classList.add('hidden');
            endBtn.classList.remove('hidden');
        }

        endBtn.addEventListener('click', () => {
            ended = true;
            release();
            setStatus('Call ended');
        });

        async function getMic() {
            try {
                return await navigator.mediaDevices.getUserMedia({
                    audio: { echoCancellation: true, noiseSuppression: true, autoGainControl: true },
                });
            } catch (err) {
                setStatus('Microphone access required');
                return null;
            }
        }

        function waitForIce(conn) {
            return new Promise((resolve) => {
                if (conn.iceGatheringState === 'complete') return resolve();
                conn.addEventListener('icegatheringstatechange', () => {
                    if (conn.iceGatheringState === 'complete') resolve();
                });
            });
        }

        async function poll(url) {
            let delay = 500;
            const end = Date.now() + TTL_MS;
            while (Date.now() < end) {
                if (ended) throw new Error('cancelled');
                const resp = await fetch(url);
                if (resp.status === 200) return resp.json();
                if (resp.status !== 404) throw new Error('error');
                await new Promise((r) => setTimeout(r, delay));
                delay = Math.min(delay * 2, 2000);
            }
            throw new Error('timeout');
        }

        function newPeer(stream) {
            const conn = new RTCPeerConnection({ iceServers: ICE });
            const remoteAudio = new Audio();
            remoteAudio.autoplay = true;
            conn.ontrack = (ev) => { remoteAudio.srcObject = ev.streams[0]; };
            stream.getTracks().forEach((track) => conn.addTrack(track, stream));
            conn.onconnectionstatechange = () => {
                if (conn.connectionState === 'connected') setStatus('Connection established');
                else if (['failed', 'disconnected', 'closed'].includes(conn.connectionState)) setStatus('Call ended');
            };
            return conn;
        }

        async function publish(url, sdp) {
            return fetch(url, {
                method: 'PUT',
                headers: { 'Content-Type': 'application/json' },
                body: JSON.stringify({ sdp }),
            });
        }

        function fail(err) {
            if (err.message !== 'cancelled') {
                setStatus(err.message === 'timeout' ? 'Link expired' : 'Connection failed');
            }
            release();
        }

        async function startInitiator() {
            const room = await (await fetch(API, { method: 'POST' })).json();
            try { await navigator.clipboard.writeText(room.joinReference); } catch (err) { /* clipboard optional */ }
            showCallControls();
            setStatus('Ready. Send the link to your partner: ' + room.joinReference);

            localStream = await getMic();
            if (!localStream) return;
            pc = newPeer(localStream);
            await pc.setLocalDescription(await pc.createOffer());
            await waitForIce(pc);
            const put = await publish(`${API}/${room.token}/offer`, pc.localDescription.sdp);
            if (!put.ok) return fail(new Error('error'));

            setStatus('Waiting for answer...');
            try {
                const answer = await poll(`${API}/${room.token}/answer`);
                await pc.setRemoteDescription({ type: 'answer', sdp: answer.sdp });
                setStatus('Establishing connection...');
            } catch (err) {
                fail(err);
            }
        }

        async function startResponder(token) {
            showCallControls();
            setStatus('Connecting...');
            localStream = await getMic();
            if (!localStream) return;

            let offer;
            try {
                offer = await poll(`${API}/${token}/offer`);
            } catch (err) {
                return fail(err);
            }

            pc = newPeer(localStream);
            await pc.setRemoteDescription({ type: 'offer', sdp: offer.sdp });
            await pc.setLocalDescription(await pc.createAnswer());
            await waitForIce(pc);
            const put = await publish(`${API}/${token}/answer`, pc.localDescription.sdp);
            if (put.status === 409) {
                setStatus('Room occupied');
                return release();
            }
            if (!put.ok) {
                setStatus('Link expired');
                return release();
            }
            setStatus('Establishing connection...');
        }

        const path = window.location.pathname;
        if (path.startsWith('/room/')) {
            startResponder(path.split('/')[2]);
        } else {
            copyBtn.addEventListener('click', () => { startInitiator(); });
        }
    </script>
</body>
</html>
"""


async def _relay_exception_handler(request: Request, exc: RelayException) -> Response:
    """Map domain failures to bare status codes; caller input errors get a detail."""

    if isinstance(exc, (MalformedPayload, PayloadTooLarge)):
        return JSONResponse({"detail": str(exc)}, status_code=exc.status_code)
    return Response(status_code=exc.status_code)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    reaper: Reaper = app.state.reaper
    reaper.start()
    logger.info("Rendezvous relay started (env=%s)", app.state.settings.app_env)
    try:
        yield
    finally:
        await reaper.stop()
        await app.state.room_store.close()


def create_app(settings: Settings | None = None, *, clock: Callable[[], float] | None = None) -> FastAPI:
    """Build an application with its own room store, rate limiter and reaper."""

    settings = settings or get_settings()
    store = RoomStore(settings.room_ttl_seconds, clock=clock)
    limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds, clock=clock)

    app = FastAPI(title="Rendezvous Relay", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.room_store = store
    app.state.rate_limiter = limiter
    app.state.reaper = Reaper(settings.sweep_interval_seconds, store, limiter)

    @app.middleware("http")
    async def limit_requests(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        client = request.client.host if request.client else ""
        try:
            await limiter.check(client)
        except RateLimited as exc:
            return Response(status_code=exc.status_code)
        # CORS preflights are answered by CORSMiddleware; any other OPTIONS is a no-op.
        if request.method == "OPTIONS":
            return Response(status_code=204)
        return await call_next(request)

    # Added last so it wraps the limiter and 429s still carry CORS headers.
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_methods=["GET", "POST", "PUT", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

    app.add_exception_handler(RelayException, _relay_exception_handler)
    app.include_router(rooms.router, prefix=f"{settings.api_prefix}/rooms", tags=["rooms"])

    page = (
        HTML_PAGE.replace("__API_PREFIX__", settings.api_prefix)
        .replace("__TTL_MS__", str(settings.room_ttl_seconds * 1000))
    )

    @app.get("/", response_class=HTMLResponse, tags=["meta"])
    async def index() -> HTMLResponse:
        """Serve the initiator page."""

        return HTMLResponse(content=page)

    @app.get("/room/{token}", response_class=HTMLResponse, tags=["meta"])
    async def join_page(token: str) -> HTMLResponse:
        """Landing page behind a join link; the script reads the token from the path."""

        return HTMLResponse(content=page)

    @app.get("/health", tags=["meta"])
    async def health() -> dict[str, str]:
        """Simple liveness probe."""

        return {"status": "ok"}

    @app.head("/health", tags=["meta"])
    async def health_head() -> Response:
        return Response(status_code=200)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(app, host=_settings.host, port=_settings.port, log_level=_settings.log_level)
