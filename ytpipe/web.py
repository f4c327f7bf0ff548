"""
The aiohttp application exposing the job manager over HTTP.

Routes mirror the job lifecycle: start a download, follow its progress as
Server-Sent Events, stream the converted output, and query status.
"""

import asyncio
import json
import logging
from typing import List, Tuple, Type

from aiohttp import web

from ._version import __version__
from .config import Settings
from .exceptions import (
    JobError, InvalidFormatError, InvalidRequestError, JobNotFoundError,
    JobNotReadyError, ServiceBusyError,
)
from .manager import JobManager
from .ratelimit import SlidingWindowRateLimiter
from .schemas import parse_start_request
from .store import JobStore

logger = logging.getLogger(__name__)

MANAGER_KEY = web.AppKey('manager', JobManager)
SETTINGS_KEY = web.AppKey('settings', Settings)
RATE_LIMITER_KEY = web.AppKey('rate_limiter', SlidingWindowRateLimiter)

SSE_HEARTBEAT_SECONDS = 15.0
DISCONNECT_POLL_SECONDS = 1.0

# Checked in order, so subclasses must precede their bases.
_ERROR_STATUS: List[Tuple[Type[JobError], int]] = [
    (InvalidFormatError, 400),
    (InvalidRequestError, 400),
    (JobNotFoundError, 404),
    (JobNotReadyError, 409),
    (ServiceBusyError, 503),
]


def _status_for(error: JobError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turns job errors raised by handlers into JSON error responses."""
    try:
        return await handler(request)
    except JobError as e:
        status = _status_for(e)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e}")
        return web.json_response({'error': str(e)}, status=status)


async def _add_cors_headers(request: web.Request, response: web.StreamResponse):
    response.headers['Access-Control-Allow-Origin'] = request.app[SETTINGS_KEY].frontend_origin
    response.headers['Access-Control-Expose-Headers'] = 'Content-Disposition'


async def preflight(request: web.Request) -> web.Response:
    return web.Response(status=204, headers={
        'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
        'Access-Control-Allow-Headers': request.headers.get('Access-Control-Request-Headers', 'Content-Type'),
        'Access-Control-Max-Age': '600',
    })


def _client_key(request: web.Request) -> str:
    """The requesting address; behind a trusted proxy, the hop that proxy appended."""
    if request.app[SETTINGS_KEY].trust_proxy:
        forwarded = request.headers.get('X-Forwarded-For', '').split(',')[-1].strip()
        if forwarded:
            return forwarded
    return request.remote or 'unknown'


def _client_disconnected(request: web.Request) -> bool:
    transport = request.transport
    return transport is None or transport.is_closing()


async def health(request: web.Request) -> web.Response:
    return web.json_response({
        'status': 'ok',
        'message': 'ytpipe MP3/MP4 downloader backend is running',
        'version': __version__,
    })


async def start_download(request: web.Request) -> web.Response:
    """POST /start-download: validates the body and creates a job."""
    settings = request.app[SETTINGS_KEY]
    limiter = request.app[RATE_LIMITER_KEY]
    client_key = _client_key(request)
    if not limiter.allow(client_key):
        retry_after = int(limiter.retry_after(client_key)) + 1
        logger.info(f"Rate limited start-download from {client_key}")
        return web.json_response(
            {'error': 'Too many requests. Please try again later.'},
            status=429,
            headers={'Retry-After': str(retry_after)},
        )

    try:
        payload = await request.json()
    except ValueError:
        raise InvalidRequestError("Request body must be valid JSON")
    start_request = parse_start_request(payload, settings.allowed_hosts)

    job = await request.app[MANAGER_KEY].create_job(start_request.url, start_request.format)
    return web.json_response({'jobId': job.job_id, 'title': job.title})


async def progress(request: web.Request) -> web.StreamResponse:
    """GET /progress/{job_id}: streams job snapshots as Server-Sent Events."""
    job_id = request.match_info['job_id']
    subscription = request.app[MANAGER_KEY].subscribe_updates(job_id)

    response = web.StreamResponse(headers={
        'Content-Type': 'text/event-stream',
        'Cache-Control': 'no-cache',
        'Connection': 'keep-alive',
    })
    try:
        await response.prepare(request)
        while True:
            try:
                snapshot = await asyncio.wait_for(subscription.__anext__(), timeout=SSE_HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                await response.write(b': keep-alive\n\n')
                continue
            except StopAsyncIteration:
                break
            await response.write(f"data: {json.dumps(snapshot)}\n\n".encode('utf-8'))
    except ConnectionResetError:
        logger.debug(f"[{job_id}] Progress observer disconnected")
    finally:
        subscription.detach()
    return response


async def download(request: web.Request) -> web.StreamResponse:
    """GET /download/{job_id}: streams the converted output to the client."""
    job_id = request.match_info['job_id']
    manager = request.app[MANAGER_KEY]
    output = manager.open_output(job_id)

    response = web.StreamResponse(headers={
        'Content-Type': output.content_type,
        'Content-Disposition': f'attachment; filename="{output.filename}"',
    })
    delivered = False
    try:
        await response.prepare(request)
        async for chunk in output.iter_chunks(lambda: _client_disconnected(request), DISCONNECT_POLL_SECONDS):
            await response.write(chunk)
        await response.write_eof()
        delivered = True
    except ConnectionResetError:
        logger.debug(f"[{job_id}] Download client disconnected")
    finally:
        manager.release_output(job_id, delivered)
    return response


async def status(request: web.Request) -> web.Response:
    """GET /status/{job_id}: the job's current snapshot."""
    snapshot = await request.app[MANAGER_KEY].get_status(request.match_info['job_id'])
    return web.json_response(snapshot)


async def tool_versions(request: web.Request) -> web.Response:
    return web.json_response(await request.app[MANAGER_KEY].tool_versions())


async def _on_startup(app: web.Application):
    await app[MANAGER_KEY].start()


async def _on_shutdown(app: web.Application):
    await app[MANAGER_KEY].shutdown()


def create_app(settings: Settings, manager: JobManager = None) -> web.Application:
    """
    Builds the aiohttp application.

    Args:
        settings: The validated service settings.
        manager: A preconfigured JobManager; built from settings when omitted.

    Returns:
        The application, ready for `web.run_app` or a test server.
    """
    if manager is None:
        store = JobStore(settings.database_path) if settings.persist_jobs else None
        manager = JobManager(settings, store=store)

    app = web.Application(middlewares=[error_middleware])
    app[SETTINGS_KEY] = settings
    app[MANAGER_KEY] = manager
    app[RATE_LIMITER_KEY] = SlidingWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    app.on_startup.append(_on_startup)
    app.on_shutdown.append(_on_shutdown)
    app.on_response_prepare.append(_add_cors_headers)

    app.router.add_get('/', health)
    app.router.add_post('/start-download', start_download)
    app.router.add_get('/progress/{job_id}', progress)
    app.router.add_get('/download/{job_id}', download)
    app.router.add_get('/status/{job_id}', status)
    app.router.add_get('/tool-versions', tool_versions)
    app.router.add_route('OPTIONS', '/{tail:.*}', preflight)
    return app
