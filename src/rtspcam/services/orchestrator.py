"""Startup sequencing and coordinated shutdown.

Sequence:
    1. inventory.enumerate()      - fails fast when ffmpeg is missing
    2. selector(devices)          - external choice (CLI prompt, flag)
    3. server.start()             - MediaMTX, fallback readiness
    4. sleep(settle_delay)        - let the listener come up
    5. stream.start()             - ffmpeg publisher, strict readiness
    6. steady state               - until SIGINT/SIGTERM

Shutdown runs once: stream first, then server, so the server never sees
a publisher vanish before teardown starts. Later signals are logged and
ignored. No step is retried; a startup failure stops whatever was started
and propagates to the caller.

Logging Strategy:
    DEBUG - Signal handler installation, status server lifecycle
    INFO  - Sequence steps, URL summary, shutdown
    WARN  - Children still running after the stop grace period
    ERROR - Startup failures, status API failures
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import signal
from typing import Any, Awaitable, Callable, Final, Optional, Sequence, TypeVar, Union

import uvicorn

from ..config_io import StreamSettings
from ..errors import ExitCode
from ..models.device import Device
from ..models.stream import StreamConfig
from ..utils.strings import mask_rtsp_credentials
from . import container
from .inventory import DeviceInventory
from .media_server import MediaServerController
from .stream import StreamController

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ============================================================================
# Constants
# ============================================================================

SHUTDOWN_SIGNALS: Final[tuple[signal.Signals, ...]] = (signal.SIGINT, signal.SIGTERM)

STOP_GRACE_PERIOD: Final[float] = 5.0
"""Seconds to wait for both children to exit after shutdown."""

Selector = Callable[[Sequence[Device]], Union[Device, Awaitable[Device]]]


class ShutdownRequested(Exception):
    """Raised inside run() when a signal interrupts a startup step."""


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the orchestrator."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


# ============================================================================
# Orchestrator
# ============================================================================

class Orchestrator:
    """Drive one publish session from device discovery to shutdown."""

    def __init__(
        self,
        inventory: DeviceInventory,
        selector: Selector,
        server: MediaServerController,
        stream: StreamController,
        stream_settings: Optional[StreamSettings] = None,
        settle_delay: float = 3.0,
        status_port: Optional[int] = None,
        status_host: str = "0.0.0.0"
    ) -> None:
        self.inventory = inventory
        self.selector = selector
        self.server = server
        self.stream = stream
        self.stream_settings = stream_settings or StreamSettings()
        self.settle_delay = settle_delay
        self.status_port = status_port
        self.status_host = status_host

        self.device: Optional[Device] = None
        self._shutdown_started = False
        self._shutdown_event = asyncio.Event()
        self._installed_signals: list[signal.Signals] = []
        self._status_server: Optional[_EmbeddedServer] = None
        self._status_task: Optional[asyncio.Task] = None

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_started

    # ========================================================================
    # Run
    # ========================================================================

    async def run(self) -> int:
        """Run the full sequence and block until shutdown.

        Returns:
            ExitCode.OK after a signal-driven shutdown

        Raises:
            RtspCamError: Any startup failure, after cleanup
        """
        loop = asyncio.get_running_loop()

        try:
            logger.info("Enumerating capture devices")
            devices = await self.inventory.enumerate()

            selected = self.selector(devices)
            if inspect.isawaitable(selected):
                selected = await selected
            self.device = selected
            logger.info(f"Selected device: {self.device.name}")

            self._install_signal_handlers(loop)

            logger.info("Starting media server")
            await self._until_shutdown(self.server.start())

            logger.info(f"Waiting {self.settle_delay}s for the media server to settle")
            await self._until_shutdown(asyncio.sleep(self.settle_delay))

            config = StreamConfig(
                width=self.stream_settings.width,
                height=self.stream_settings.height,
                fps=self.stream_settings.fps,
                target_url=self.server.publish_url()
            )
            await self._until_shutdown(self.stream.start(self.device, config))

            self._log_summary()
            await self._start_status_server()

            await self._shutdown_event.wait()
            return ExitCode.OK

        except ShutdownRequested:
            logger.info("Startup interrupted by shutdown request")
            return ExitCode.OK

        except BaseException as e:
            if not isinstance(e, (KeyboardInterrupt, asyncio.CancelledError)):
                logger.error(f"Startup failed: {e}")
            self.shutdown(f"startup failure ({type(e).__name__})")
            raise

        finally:
            self._remove_signal_handlers(loop)
            await self._stop_status_server()
            await self._wait_for_children()

    async def _until_shutdown(self, step: Awaitable[T]) -> T:
        """Await a startup step, abandoning it if shutdown begins."""
        task = asyncio.ensure_future(step)
        waiter = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if not self._shutdown_started:
            return task.result()

        # Stopped children make their pending start fail; that is expected here
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise ShutdownRequested()

    # ========================================================================
    # Shutdown
    # ========================================================================

    def shutdown(self, reason: str) -> bool:
        """Stop the stream, then the server. Runs at most once.

        Returns:
            True on the first call, False afterwards
        """
        if self._shutdown_started:
            logger.info(f"Shutdown already in progress, ignoring ({reason})")
            return False
        self._shutdown_started = True

        logger.info(f"Shutting down ({reason})")
        if not self.stream.stop():
            self.stream.abort()
        self.server.stop()

        self._shutdown_event.set()
        return True

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}")
        self.shutdown(f"signal {sig.name}")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(
                    sig,
                    lambda signum, frame: loop.call_soon_threadsafe(
                        self._on_signal, signal.Signals(signum)
                    )
                )
            self._installed_signals.append(sig)
        logger.debug(f"Signal handlers installed: {', '.join(s.name for s in SHUTDOWN_SIGNALS)}")

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._installed_signals:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                default = signal.default_int_handler if sig is signal.SIGINT else signal.SIG_DFL
                signal.signal(sig, default)
        self._installed_signals.clear()

    async def _wait_for_children(self) -> None:
        try:
            await asyncio.wait_for(
                asyncio.gather(self.stream.supervisor.wait(), self.server.supervisor.wait()),
                timeout=STOP_GRACE_PERIOD
            )
        except asyncio.TimeoutError:
            logger.warning(f"Child processes still running after {STOP_GRACE_PERIOD}s")

    # ========================================================================
    # Status API
    # ========================================================================

    async def _start_status_server(self) -> None:
        if self.status_port is None:
            return

        from ..status_app import create_app

        container.set_orchestrator(self)
        config = uvicorn.Config(
            create_app(),
            host=self.status_host,
            port=self.status_port,
            log_config=None,
            access_log=False,
        )
        self._status_server = _EmbeddedServer(config)
        self._status_task = asyncio.create_task(self._serve_status())
        logger.info(f"Status API: http://{self.status_host}:{self.status_port}/health")

    async def _serve_status(self) -> None:
        try:
            await self._status_server.serve()
        except SystemExit:
            # uvicorn exits the process when it cannot bind
            logger.error(f"Status API failed to start on port {self.status_port}")

    async def _stop_status_server(self) -> None:
        if self._status_server is None:
            return
        self._status_server.should_exit = True
        if self._status_task is not None:
            await self._status_task
        container.set_orchestrator(None)
        self._status_server = None
        self._status_task = None
        logger.debug("Status API stopped")

    # ========================================================================
    # Reporting
    # ========================================================================

    def summary(self) -> dict[str, Any]:
        """Process states, selected device and credential-masked URLs."""
        return {
            "processes": {
                "server": self.server.handle.model_dump(mode="json"),
                "stream": self.stream.handle.model_dump(mode="json"),
            },
            "device": self.device.model_dump() if self.device else None,
            "urls": {
                "publish": mask_rtsp_credentials(self.server.publish_url()),
                "public": mask_rtsp_credentials(self.server.public_url()),
                "webrtc": self.server.webrtc_url(),
            },
            "shutting_down": self._shutdown_started,
        }

    def _log_summary(self) -> None:
        logger.info("=" * 60)
        logger.info(f"Streaming '{self.device.name}'")
        logger.info(f"  Local viewer:  {self.server.view_url()}")
        logger.info(f"  Public viewer: {self.server.public_url()}")
        logger.info(f"  WebRTC:        {self.server.webrtc_url()}")
        logger.info("Press Ctrl+C to stop")
        logger.info("=" * 60)
