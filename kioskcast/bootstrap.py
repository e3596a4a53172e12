"""Bring up PulseAudio and Xvfb before anything else attaches to them.

Audio comes first: Chrome picks its output device at launch, so the null
sink has to exist and be the default by then. Audio problems only cost us the
soundtrack and are logged as warnings. Display problems are fatal.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .config import StreamConfig
from .errors import AudioBootstrapError, DisplayBootstrapError, ReadinessTimeout
from .process import ManagedProcess, run_command

logger = logging.getLogger(__name__)

X11_SOCKET_DIR = Path('/tmp/.X11-unix')
POLL_INTERVAL = 0.25


@dataclass
class DisplayHandle:
	display_id: str
	process: Optional[ManagedProcess] = None


@dataclass
class AudioSinkHandle:
	sink_name: str
	monitor_source: str
	available: bool = True


async def wait_until_ready(
	probe: Callable[[], Awaitable[bool]],
	*,
	name: str,
	timeout: float,
	interval: float = POLL_INTERVAL,
) -> None:
	"""Poll `probe` until it returns True, raising ReadinessTimeout after `timeout`."""
	deadline = time.monotonic() + timeout
	while True:
		if await probe():
			return
		if time.monotonic() >= deadline:
			raise ReadinessTimeout(name, timeout)
		await asyncio.sleep(interval)


async def _pactl(*args: str) -> None:
	try:
		result = await run_command('pactl', *args)
	except (OSError, asyncio.TimeoutError) as error:
		raise AudioBootstrapError(f'pactl {" ".join(args)} failed: {error}') from error
	if not result.ok:
		raise AudioBootstrapError(f'pactl {" ".join(args)} exited {result.returncode}: {result.stderr.strip()}')
	if result.stderr.strip():
		logger.debug('pactl stderr: %s', result.stderr.strip())


async def _pulse_reachable() -> bool:
	try:
		result = await run_command('pactl', 'info', timeout=5.0)
	except (OSError, asyncio.TimeoutError):
		return False
	return result.ok


async def start_audio(config: StreamConfig) -> AudioSinkHandle:
	"""Start a fresh PulseAudio daemon and make an unmuted null sink the default."""
	sink = config.audio_sink_name
	handle = AudioSinkHandle(sink_name=sink, monitor_source=f'{sink}.monitor')

	logger.info('Starting PulseAudio...')
	try:
		await run_command('pulseaudio', '-k')
	except (OSError, asyncio.TimeoutError) as error:
		logger.debug('No previous PulseAudio instance to stop: %s', error)

	try:
		result = await run_command('pulseaudio', '-D', '--exit-idle-time=-1', '--disallow-exit')
		if not result.ok:
			raise AudioBootstrapError(f'pulseaudio exited {result.returncode}: {result.stderr.strip()}')
		await asyncio.sleep(config.audio_settle_seconds)
		await wait_until_ready(_pulse_reachable, name='PulseAudio', timeout=config.readiness_timeout_seconds)

		await _pactl(
			'load-module',
			'module-null-sink',
			f'sink_name={sink}',
			f'sink_properties=device.description={sink}',
		)
	except (OSError, asyncio.TimeoutError, AudioBootstrapError, ReadinessTimeout) as error:
		logger.warning('PulseAudio setup failed: %s', error)
		handle.available = False
		return handle

	# Fresh sinks may come up muted or at zero volume depending on the daemon version
	for args in (
		('set-default-sink', sink),
		('set-sink-mute', sink, '0'),
		('set-sink-volume', sink, '100%'),
	):
		try:
			await _pactl(*args)
		except AudioBootstrapError as error:
			logger.warning('PulseAudio step failed, continuing: %s', error)

	logger.info('Audio sink %s is the default output (monitor %s)', sink, handle.monitor_source)
	return handle


def x11_socket(config: StreamConfig) -> Path:
	return X11_SOCKET_DIR / f'X{config.display_number}'


async def start_display(config: StreamConfig) -> DisplayHandle:
	"""Start Xvfb and wait for its socket. Any failure here is fatal."""
	logger.info(
		'Starting Xvfb on %s (%dx%dx24)...', config.display_id, config.frame_width, config.frame_height
	)
	try:
		process = await ManagedProcess.spawn(
			'Xvfb',
			'Xvfb',
			config.display_id,
			'-screen',
			'0',
			f'{config.frame_width}x{config.frame_height}x24',
			'-nolisten',
			'tcp',
		)
	except OSError as error:
		raise DisplayBootstrapError(f'Unable to start Xvfb: {error}') from error

	handle = DisplayHandle(display_id=config.display_id, process=process)
	socket_path = x11_socket(config)

	async def display_ready() -> bool:
		if not process.is_running():
			raise DisplayBootstrapError(f'Xvfb exited with status {process.returncode}')
		return socket_path.exists()

	# Xvfb is ours to stop until the handle is returned, cancellation included
	try:
		await asyncio.sleep(config.display_settle_seconds)
		await wait_until_ready(display_ready, name='Xvfb', timeout=config.readiness_timeout_seconds)
	except BaseException:
		await process.stop()
		raise
	logger.info('Xvfb ready on %s', config.display_id)
	return handle


async def bootstrap(config: StreamConfig) -> tuple[DisplayHandle, AudioSinkHandle]:
	audio = await start_audio(config)
	display = await start_display(config)
	return display, audio


async def teardown_display(display: Optional[DisplayHandle]) -> None:
	if display is None or display.process is None:
		return
	await display.process.stop()
	logger.info('Xvfb stopped')
