import asyncio                # Polling loops and task cancellation
import logging                # Module logger

# HTTP client and in-process signals
import httpx
from blinker import Namespace

logger = logging.getLogger(__name__)

# =============================================================================
# CLIENT PLUMBING - REQUESTS, POLLING AND LOCAL SIGNALS
# =============================================================================
# Shared by the client-side controllers. Signals let sibling controllers react
# to each other without waiting for a poll tick.

client_signals = Namespace()

# Sent after a conversation was marked read; kwargs: conversation_id
messages_read = client_signals.signal("messages-read")


class ApiError(Exception):
    """Raised when a REST call fails at the transport level or with a 4xx/5xx."""

    def __init__(self, message, status_code=None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    @property
    def rate_limited(self):
        return self.status_code == 429


async def request_json(client, method, url, **kwargs):
    """
    Make one request and return the decoded JSON body.

    Raises:
        ApiError: on transport failure or a non-2xx status
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise ApiError("%s %s failed: %s" % (method, url, exc)) from exc

    if response.status_code >= 400:
        try:
            body = response.json()
        except ValueError:
            body = None
        # Proxies may answer with a bare JSON string or list
        message = body.get("error") if isinstance(body, dict) else None
        raise ApiError(message or "HTTP %d" % response.status_code, response.status_code)

    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise ApiError("Invalid JSON from %s %s" % (method, url), response.status_code) from exc


async def poll_every(interval, func, sleep=asyncio.sleep):
    """
    Await func() every `interval` seconds until the surrounding task is cancelled.
    """
    while True:
        await sleep(interval)
        await func()


async def cancel_task(task):
    """
    Cancel a controller task and wait for it to unwind.
    """
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
