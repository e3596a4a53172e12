"""Top-level state machine: start every engine in order, then keep the encoder alive.

Recovery is deliberately narrow. A failed or ended encoder is replaced while
the display, audio sink and browser stay up; anything worse (a dead browser,
a failed bootstrap, a tripped circuit breaker) exits non-zero so the external
process manager relaunches us from scratch.
"""

from __future__ import annotations

import asyncio
import collections
import enum
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

from . import log
from .bootstrap import AudioSinkHandle, DisplayHandle, bootstrap, teardown_display
from .config import StreamConfig, log_config, resolve
from .encoder import EncodePipeline, EncodePipelineManager, PipelineEvent, PipelineEventKind
from .errors import ConfigurationError
from .render import RenderSession, RenderSessionManager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class SupervisorState(enum.Enum):
	BOOTSTRAPPING = 'bootstrapping'
	STREAMING = 'streaming'
	RESTARTING = 'restarting'
	FAILED_FATAL = 'failed_fatal'
	STOPPED = 'stopped'


class _StopRequested(Exception):
	"""Raised inside the supervisor when a stop signal interrupts a wait."""


@dataclass
class RestartPolicy:
	"""Delay before each scoped restart, plus an optional circuit breaker.

	With the defaults (factor 1.0, max_failures 0) every restart waits
	`base_delay` and there is no limit on attempts.
	"""

	base_delay: float = 5.0
	backoff_factor: float = 1.0
	max_delay: float = 60.0
	max_failures: int = 0
	window: float = 300.0
	_failures: collections.deque = field(default_factory=collections.deque, repr=False)

	@classmethod
	def from_config(cls, config: StreamConfig) -> 'RestartPolicy':
		return cls(
			base_delay=config.restart_delay_seconds,
			backoff_factor=config.restart_backoff_factor,
			max_delay=config.restart_max_delay_seconds,
			max_failures=config.restart_max_failures,
			window=config.restart_failure_window_seconds,
		)

	@property
	def recent_failures(self) -> int:
		return len(self._failures)

	def record_failure(self, now: float) -> bool:
		"""Record a failure at `now`; True means the breaker tripped."""
		self._failures.append(now)
		while self._failures and now - self._failures[0] > self.window:
			self._failures.popleft()
		return self.max_failures > 0 and len(self._failures) >= self.max_failures

	def next_delay(self) -> float:
		if self.backoff_factor <= 1.0:
			return self.base_delay
		attempt = max(len(self._failures), 1)
		return min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


@dataclass
class StreamContext:
	"""Every long-lived handle, owned by the supervisor for teardown."""

	config: Optional[StreamConfig] = None
	display: Optional[DisplayHandle] = None
	audio: Optional[AudioSinkHandle] = None
	session: Optional[RenderSession] = None
	pipeline: Optional[EncodePipeline] = None


class Supervisor:
	def __init__(
		self,
		env: Optional[Mapping[str, str]] = None,
		*,
		resolve_config: Callable[[Optional[Mapping[str, str]]], StreamConfig] = resolve,
		bootstrapper: Callable[[StreamConfig], Awaitable[tuple[DisplayHandle, AudioSinkHandle]]] = bootstrap,
		render_manager: Optional[Any] = None,
		pipeline_manager: Optional[Any] = None,
		display_teardown: Callable[[Optional[DisplayHandle]], Awaitable[None]] = teardown_display,
		sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
		clock: Callable[[], float] = time.monotonic,
		install_signal_handlers: bool = True,
	) -> None:
		self._env = env
		self._resolve_config = resolve_config
		self._bootstrapper = bootstrapper
		self._render_manager = render_manager or RenderSessionManager()
		self._pipeline_manager = pipeline_manager or EncodePipelineManager()
		self._display_teardown = display_teardown
		self._sleep = sleep
		self._clock = clock
		self._install_signal_handlers = install_signal_handlers

		self.state = SupervisorState.BOOTSTRAPPING
		self.context = StreamContext()
		self.events: asyncio.Queue = asyncio.Queue()
		self.restart_policy = RestartPolicy()
		self.restart_count = 0
		self._stop_event = asyncio.Event()
		self._signals: list[int] = []

	def _set_state(self, state: SupervisorState) -> None:
		if state is not self.state:
			logger.debug('Supervisor state %s -> %s', self.state.value, state.value)
		self.state = state

	def request_stop(self) -> None:
		"""Ask for a graceful shutdown; safe to call from a signal handler."""
		if not self._stop_event.is_set():
			logger.info('Stop requested')
		self._stop_event.set()

	def _add_signal_handlers(self) -> None:
		if not self._install_signal_handlers:
			return
		loop = asyncio.get_running_loop()
		for sig in (signal.SIGINT, signal.SIGTERM):
			try:
				loop.add_signal_handler(sig, self.request_stop)
				self._signals.append(sig)
			except (NotImplementedError, RuntimeError):
				logger.debug('Signal handler for %s unavailable', sig)

	def _remove_signal_handlers(self) -> None:
		if not self._signals:
			return
		loop = asyncio.get_running_loop()
		for sig in self._signals:
			loop.remove_signal_handler(sig)
		self._signals.clear()

	async def _until_stopped(self, awaitable: Awaitable[Any]) -> Any:
		"""Await `awaitable` unless a stop is requested first."""
		if self._stop_event.is_set():
			if asyncio.iscoroutine(awaitable):
				awaitable.close()
			raise _StopRequested()
		task = asyncio.ensure_future(awaitable)
		stopper = asyncio.ensure_future(self._stop_event.wait())
		try:
			done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
		except asyncio.CancelledError:
			task.cancel()
			stopper.cancel()
			raise
		if task in done:
			stopper.cancel()
			return task.result()
		task.cancel()
		try:
			await task
		except asyncio.CancelledError:
			pass
		except Exception as error:
			logger.debug('Interrupted operation raised: %s', error)
		raise _StopRequested()

	async def run(self) -> int:
		"""Run until a stop signal or a fatal failure; returns the exit status."""
		self._add_signal_handlers()
		try:
			return await self._run()
		finally:
			self._remove_signal_handlers()

	async def _run(self) -> int:
		try:
			await self._until_stopped(self._bootstrap())
		except _StopRequested:
			return await self._shutdown()
		except ConfigurationError as error:
			logger.error('%s', error)
			return self._fail()
		except Exception as error:
			logger.error('Fatal error during startup: %s', error)
			logger.debug('Startup failure details', exc_info=True)
			await self._teardown()
			return self._fail()

		self._set_state(SupervisorState.STREAMING)
		try:
			while True:
				event = await self._until_stopped(self.events.get())
				if not await self._handle_event(event):
					await self._teardown()
					return self._fail()
		except _StopRequested:
			return await self._shutdown()
		except Exception as error:
			logger.error('Unrecoverable supervisor error: %s', error)
			logger.debug('Supervisor failure details', exc_info=True)
			await self._teardown()
			return self._fail()

	async def _bootstrap(self) -> None:
		self._set_state(SupervisorState.BOOTSTRAPPING)
		config = self._resolve_config(self._env)
		log.register_secret(config.stream_key)
		self.context.config = config
		self.restart_policy = RestartPolicy.from_config(config)
		log_config(config)

		display, audio = await self._bootstrapper(config)
		self.context.display = display
		self.context.audio = audio

		self.context.session = await self._render_manager.launch(config, display)
		self.context.pipeline = await self._start_pipeline()

	async def _start_pipeline(self) -> EncodePipeline:
		context = self.context
		return await self._pipeline_manager.start(context.config, context.display, context.audio, self.events)

	async def _handle_event(self, event: PipelineEvent) -> bool:
		"""React to one encoder event. False means the process must exit."""
		pipeline = self.context.pipeline
		if pipeline is None or event.pipeline_id != pipeline.pipeline_id:
			logger.debug('Ignoring %s event from stale pipeline #%d', event.kind.value, event.pipeline_id)
			return True
		if event.kind is PipelineEventKind.STARTED:
			logger.debug('Command: %s', event.detail)
			return True
		if event.kind is PipelineEventKind.FAILED:
			logger.warning('Encoder pipeline #%d failed: %s', event.pipeline_id, event.detail)
		else:
			logger.warning('Encoder pipeline #%d ended', event.pipeline_id)
		return await self._restart()

	async def _stop_pipeline(self, pipeline: Optional[EncodePipeline]) -> None:
		if pipeline is None:
			return
		try:
			await pipeline.stop()
		except Exception as error:
			logger.debug('Error stopping encoder pipeline #%d: %s', pipeline.pipeline_id, error)

	async def _restart(self) -> bool:
		self._set_state(SupervisorState.RESTARTING)
		pipeline, self.context.pipeline = self.context.pipeline, None
		await self._stop_pipeline(pipeline)

		session = self.context.session
		if session is None or not session.is_connected():
			logger.error('Browser disconnected. Full restart.')
			return False

		if self.restart_policy.record_failure(self._clock()):
			logger.error(
				'Encoder failed %d times within %.0fs. Full restart.',
				self.restart_policy.recent_failures,
				self.restart_policy.window,
			)
			return False

		delay = self.restart_policy.next_delay()
		logger.info('Restarting streaming components in %.1fs...', delay)
		await self._until_stopped(self._sleep(delay))

		self.context.pipeline = await self._start_pipeline()
		self.restart_count += 1
		self._set_state(SupervisorState.STREAMING)
		return True

	async def _teardown(self) -> None:
		"""Stop encoder, browser and display, in that order, each best-effort."""
		context = self.context
		pipeline, context.pipeline = context.pipeline, None
		session, context.session = context.session, None
		display, context.display = context.display, None

		async def stop_encoder() -> None:
			if pipeline is not None:
				await pipeline.stop()

		async def close_session() -> None:
			if session is not None:
				await session.close()

		async def stop_display() -> None:
			await self._display_teardown(display)

		for name, step in (
			('encoder', stop_encoder),
			('render session', close_session),
			('display', stop_display),
		):
			try:
				await step()
			except Exception as error:
				logger.warning('Failed to stop %s: %s', name, error)

	async def _shutdown(self) -> int:
		logger.info('Stopping...')
		await self._teardown()
		self._set_state(SupervisorState.STOPPED)
		logger.info('Stopped.')
		return EXIT_OK

	def _fail(self) -> int:
		self._set_state(SupervisorState.FAILED_FATAL)
		return EXIT_FAILURE
