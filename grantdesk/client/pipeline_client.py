"""PipelineClient: consumes a pipeline event stream from the server.

One POST per run. Progress frames go to the caller's callback; the first
terminal frame settles the RunHandle. The inactivity timer is reset on
every progress frame, so a server that goes silent without closing the
connection surfaces as a PipelineTimeoutError.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from grantdesk.config.settings import Settings
from grantdesk.streaming.decoder import FrameDecoder
from grantdesk.streaming.events import FrameType, ProgressFrame

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressFrame], Union[None, Awaitable[None]]]


class PipelineError(Exception):
    """Base class for pipeline run failures seen by the client."""


class PipelineServerError(PipelineError):
    """The server reported failure (error frame or non-2xx status)."""


class PipelineTimeoutError(PipelineError):
    """No progress frame arrived within the inactivity timeout."""


class PipelineConnectionError(PipelineError):
    """Transport failure, or the stream closed without a terminal frame."""


class RunHandle:
    """Caller-owned handle for one in-flight run."""

    def __init__(self, future: asyncio.Future) -> None:
        self._future = future
        self._task: Optional[asyncio.Task] = None

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task

    async def result(self) -> dict[str, Any]:
        """The complete payload; raises PipelineError or CancelledError."""
        return await self._future

    def cancel(self) -> None:
        """Abandon the run. Safe to call repeatedly and after completion."""
        if self._future.done():
            return
        self._future.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def is_active(self) -> bool:
        return not self._future.done()


class PipelineClient:
    def __init__(
        self,
        base_url: str,
        inactivity_timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if inactivity_timeout is None:
            inactivity_timeout = Settings().client_inactivity_timeout_seconds
        self.inactivity_timeout = inactivity_timeout
        self._http_client = http_client

    async def run(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunHandle:
        """Start a run and return its handle immediately."""
        future = asyncio.get_running_loop().create_future()
        handle = RunHandle(future)
        task = asyncio.create_task(self._consume(path, params or {}, on_progress, future))
        handle._attach(task)
        return handle

    async def _consume(
        self,
        path: str,
        params: dict[str, Any],
        on_progress: Optional[ProgressCallback],
        future: asyncio.Future,
    ) -> None:
        client = self._http_client or httpx.AsyncClient(timeout=None)
        try:
            payload = await self._read_stream(client, path, params, on_progress)
        except TimeoutError:
            logger.warning(f"No progress from {path} for {self.inactivity_timeout}s; giving up")
            _reject(future, PipelineTimeoutError(
                f"No progress for {self.inactivity_timeout} seconds"
            ))
        except PipelineError as e:
            _reject(future, e)
        except httpx.HTTPError as e:
            _reject(future, PipelineConnectionError(str(e) or type(e).__name__))
        except asyncio.CancelledError:
            # Caller-initiated cancel; the future is already cancelled.
            raise
        except Exception as e:
            logger.exception(f"Progress handling failed for {path}")
            _reject(future, e)
        else:
            if not future.done():
                future.set_result(payload)
        finally:
            if self._http_client is None:
                await client.aclose()

    async def _read_stream(
        self,
        client: httpx.AsyncClient,
        path: str,
        params: dict[str, Any],
        on_progress: Optional[ProgressCallback],
    ) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        decoder = FrameDecoder()
        async with asyncio.timeout(self.inactivity_timeout) as deadline:
            async with client.stream(
                "POST",
                f"{self.base_url}{path}",
                json=params,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise PipelineServerError(
                        f"HTTP {response.status_code}: {_error_message(body)}"
                    )

                async for chunk in response.aiter_bytes():
                    for frame in decoder.feed(chunk):
                        if frame.event == FrameType.PROGRESS.value:
                            deadline.reschedule(loop.time() + self.inactivity_timeout)
                            if on_progress is not None and isinstance(frame.data, dict):
                                outcome = on_progress(ProgressFrame.from_dict(frame.data))
                                if inspect.isawaitable(outcome):
                                    await outcome
                        elif frame.event == FrameType.COMPLETE.value:
                            return frame.data if isinstance(frame.data, dict) else {}
                        elif frame.event == FrameType.ERROR.value:
                            message = (
                                frame.data.get("error")
                                if isinstance(frame.data, dict)
                                else str(frame.data)
                            )
                            raise PipelineServerError(message or "Unknown server error")
                decoder.close()

        raise PipelineConnectionError("Stream closed before the run finished")


def _reject(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)


def _error_message(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except ValueError:
        return text[:200]
    if isinstance(data, dict):
        return str(data.get("error") or data.get("detail") or data)
    return text[:200]
