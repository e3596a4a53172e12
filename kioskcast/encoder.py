"""ffmpeg capture of the virtual display and audio monitor, pushed as FLV/RTMP.

Every invocation reports back through a single asyncio.Queue of
PipelineEvent values; the supervisor is the only consumer.
"""

from __future__ import annotations

import asyncio
import collections
import enum
import itertools
import logging
import shlex
from dataclasses import dataclass
from typing import Optional

from .bootstrap import AudioSinkHandle, DisplayHandle
from .config import StreamConfig
from .errors import PipelineError
from .log import SUCCESS, redact
from .process import DEFAULT_STOP_TIMEOUT

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


class PipelineEventKind(enum.Enum):
	STARTED = 'started'
	FAILED = 'failed'
	ENDED = 'ended'


@dataclass(frozen=True)
class PipelineEvent:
	kind: PipelineEventKind
	pipeline_id: int
	detail: Optional[str] = None

	@classmethod
	def started(cls, pipeline_id: int, descriptor: str) -> 'PipelineEvent':
		return cls(PipelineEventKind.STARTED, pipeline_id, descriptor)

	@classmethod
	def failed(cls, pipeline_id: int, cause: str) -> 'PipelineEvent':
		return cls(PipelineEventKind.FAILED, pipeline_id, cause)

	@classmethod
	def ended(cls, pipeline_id: int) -> 'PipelineEvent':
		return cls(PipelineEventKind.ENDED, pipeline_id)

	@property
	def is_terminal(self) -> bool:
		return self.kind in (PipelineEventKind.FAILED, PipelineEventKind.ENDED)


@dataclass(frozen=True)
class CropGeometry:
	"""Crop away browser chrome, then scale back to the published frame size."""

	x: int
	y: int
	width: int
	height: int
	output_width: int
	output_height: int

	@property
	def filter_expression(self) -> str:
		return (
			f'crop={self.width}:{self.height}:{self.x}:{self.y},'
			f'scale={self.output_width}:{self.output_height}'
		)


def compute_geometry(config: StreamConfig) -> CropGeometry:
	return CropGeometry(
		x=config.crop_left,
		y=config.crop_top,
		width=config.frame_width - config.crop_left,
		height=config.frame_height - config.crop_top - config.crop_bottom,
		output_width=config.frame_width,
		output_height=config.frame_height,
	)


def build_command(
	config: StreamConfig,
	display: DisplayHandle,
	audio: AudioSinkHandle,
	*,
	ffmpeg_path: str = 'ffmpeg',
) -> list[str]:
	geometry = compute_geometry(config)
	cmd = [
		ffmpeg_path,
		'-hide_banner',
		'-nostdin',
		'-loglevel', 'warning',
		# Video: the virtual display
		'-f', 'x11grab',
		'-video_size', f'{config.frame_width}x{config.frame_height}',
		'-framerate', str(config.frame_rate),
		'-draw_mouse', '0',
		'-i', display.display_id,
	]
	if audio.available:
		cmd += ['-f', 'pulse', '-i', audio.monitor_source]
	else:
		# Keep an audio track so ingest servers accept the stream
		cmd += ['-f', 'lavfi', '-i', f'anullsrc=channel_layout=stereo:sample_rate={config.audio_sample_rate}']
	cmd += [
		'-vf', geometry.filter_expression,
		'-c:v', 'libx264',
		'-preset', config.video_preset,
		'-maxrate', config.video_maxrate,
		'-bufsize', config.video_bufsize,
		'-pix_fmt', 'yuv420p',
		'-g', str(config.keyframe_interval),
		'-c:a', 'aac',
		'-b:a', config.audio_bitrate,
		'-ar', str(config.audio_sample_rate),
		'-f', 'flv',
		config.destination,
	]
	return cmd


class EncodePipeline:
	"""One ffmpeg invocation. Not restartable; the manager builds a new one."""

	def __init__(
		self,
		pipeline_id: int,
		command: list[str],
		events: asyncio.Queue,
		*,
		descriptor: Optional[str] = None,
	) -> None:
		self.pipeline_id = pipeline_id
		self.command = command
		self._descriptor = descriptor
		self._events = events
		self._process: Optional[asyncio.subprocess.Process] = None
		self._watch_task: Optional[asyncio.Task] = None
		self._stderr_tail: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
		self._stop_requested = False

	@property
	def descriptor(self) -> str:
		return redact(self._descriptor or shlex.join(self.command))

	@property
	def stop_requested(self) -> bool:
		return self._stop_requested

	def is_running(self) -> bool:
		return self._process is not None and self._process.returncode is None

	def _emit(self, event: PipelineEvent) -> None:
		if self._stop_requested:
			logger.debug('Dropping %s event from stopped pipeline #%d', event.kind.value, self.pipeline_id)
			return
		self._events.put_nowait(event)

	async def start(self) -> None:
		try:
			self._process = await asyncio.create_subprocess_exec(
				*self.command,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.DEVNULL,
				stderr=asyncio.subprocess.PIPE,
			)
		except OSError as error:
			cause = PipelineError(f'Unable to spawn ffmpeg: {error}')
			logger.error('Stream error: %s', cause)
			self._emit(PipelineEvent.failed(self.pipeline_id, str(cause)))
			return

		logger.log(SUCCESS, 'Streaming started! (pipeline #%d, pid %s)', self.pipeline_id, self._process.pid)
		self._emit(PipelineEvent.started(self.pipeline_id, self.descriptor))
		self._watch_task = asyncio.create_task(self._watch())

	async def _drain_stderr(self) -> None:
		assert self._process is not None and self._process.stderr is not None
		while True:
			line = await self._process.stderr.readline()
			if not line:
				return
			text = redact(line.decode(errors='replace').rstrip())
			if text:
				self._stderr_tail.append(text)
				logger.debug('ffmpeg: %s', text)

	async def _watch(self) -> None:
		assert self._process is not None
		await self._drain_stderr()
		returncode = await self._process.wait()
		if self._stop_requested:
			return
		if returncode == 0:
			logger.warning('Stream ended.')
			self._emit(PipelineEvent.ended(self.pipeline_id))
			return
		cause = PipelineError(f'ffmpeg exited with status {returncode}')
		if self._stderr_tail:
			cause = PipelineError(f'{cause}: {self._stderr_tail[-1]}')
		logger.error('Stream error: %s', cause)
		self._emit(PipelineEvent.failed(self.pipeline_id, str(cause)))

	async def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> None:
		"""Terminate ffmpeg. The process may already be gone; that is fine."""
		self._stop_requested = True
		process = self._process
		if process is not None and process.returncode is None:
			try:
				process.terminate()
				await asyncio.wait_for(process.wait(), timeout=timeout)
			except ProcessLookupError:
				pass
			except asyncio.TimeoutError:
				logger.warning('ffmpeg did not exit after %.1fs, killing it', timeout)
				try:
					process.kill()
				except ProcessLookupError:
					pass
				await process.wait()
		if self._watch_task is not None and not self._watch_task.done():
			self._watch_task.cancel()
			try:
				await self._watch_task
			except asyncio.CancelledError:
				pass


class EncodePipelineManager:
	"""Builds and starts EncodePipeline instances with increasing ids."""

	def __init__(self, *, ffmpeg_path: str = 'ffmpeg') -> None:
		self.ffmpeg_path = ffmpeg_path
		self._ids = itertools.count(1)

	async def start(
		self,
		config: StreamConfig,
		display: DisplayHandle,
		audio: AudioSinkHandle,
		events: asyncio.Queue,
	) -> EncodePipeline:
		logger.info('Starting FFmpeg stream...')
		logger.info('Source: X11 display %s, audio %s', display.display_id, audio.monitor_source if audio.available else 'silence')
		logger.info('Target: %s (key hidden)', config.redacted_destination)
		command = build_command(config, display, audio, ffmpeg_path=self.ffmpeg_path)
		pipeline = EncodePipeline(
			next(self._ids),
			command,
			events,
			descriptor=shlex.join(command[:-1] + [config.redacted_destination]),
		)
		await pipeline.start()
		return pipeline
