"""Configuration management for the page-to-stream bridge."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError
from .log import REDACTED

logger = logging.getLogger(__name__)

load_dotenv()

# Order matters: this is the order missing names are reported in.
REQUIRED_VARIABLES = ('WEBSITE_URL', 'RTMP_URL', 'RTMP_KEY')

DEFAULT_USER_AGENT = (
	'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
	'(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)


def _parse_float(env: Mapping[str, str], name: str, default: float) -> Tuple[float, bool]:
	"""Return environment variable as float when possible, falling back to default."""
	value = env.get(name)
	if value is None or value.strip() == '':
		return default, True
	try:
		return float(value), False
	except ValueError:
		logger.warning('Ignoring invalid float for %s: %s', name, value)
		return default, True


def _parse_int(env: Mapping[str, str], name: str, default: int) -> Tuple[int, bool]:
	"""Return environment variable as int when possible, falling back to default."""
	value = env.get(name)
	if value is None or value.strip() == '':
		return default, True
	try:
		return int(value), False
	except ValueError:
		logger.warning('Ignoring invalid integer for %s: %s', name, value)
		return default, True


def _get_str(env: Mapping[str, str], name: str, default: str = '') -> str:
	return (env.get(name) or '').strip() or default


def compose_destination(base_url: str, stream_key: str) -> str:
	"""Join base URL and stream key with exactly one '/' between them."""
	if base_url.endswith('/'):
		return f'{base_url}{stream_key}'
	return f'{base_url}/{stream_key}'


def normalize_display(value: str) -> str:
	value = value.strip()
	if value and not value.startswith(':'):
		value = f':{value}'
	return value


@dataclass(frozen=True)
class StreamConfig:
	"""Validated, immutable settings for one process lifetime."""

	destination_base_url: str
	stream_key: str
	source_page_url: str
	display_id: str = ':99'
	frame_width: int = 1280
	frame_height: int = 720
	crop_top: int = 0
	crop_bottom: int = 0
	crop_left: int = 0
	scroll_offset: int = 0

	# Encoder tuning
	frame_rate: int = 30
	video_preset: str = 'veryfast'
	video_maxrate: str = '3000k'
	video_bufsize: str = '6000k'
	keyframe_interval: int = 60
	audio_bitrate: str = '128k'
	audio_sample_rate: int = 44100

	# Engines
	audio_sink_name: str = 'VirtualSink'
	chrome_executable_path: Optional[str] = None
	chrome_debug_port: int = 9222
	user_agent: str = DEFAULT_USER_AGENT

	# Waits, in seconds
	audio_settle_seconds: float = 1.0
	display_settle_seconds: float = 2.0
	media_settle_seconds: float = 3.0
	readiness_timeout_seconds: float = 15.0
	navigation_timeout_seconds: float = 60.0

	# Scoped restart policy
	restart_delay_seconds: float = 5.0
	restart_backoff_factor: float = 1.0
	restart_max_delay_seconds: float = 60.0
	restart_max_failures: int = 0
	restart_failure_window_seconds: float = 300.0

	@property
	def destination(self) -> str:
		return compose_destination(self.destination_base_url, self.stream_key)

	@property
	def redacted_destination(self) -> str:
		return compose_destination(self.destination_base_url, REDACTED)

	@property
	def display_number(self) -> str:
		return self.display_id.lstrip(':').split('.')[0]


def _validate_geometry(config: StreamConfig) -> list[str]:
	invalid: list[str] = []
	if config.frame_width <= 0:
		invalid.append('SCREEN_WIDTH')
	if config.frame_height <= 0:
		invalid.append('SCREEN_HEIGHT')
	for name, value in (
		('CROP_TOP', config.crop_top),
		('CROP_BOTTOM', config.crop_bottom),
		('CROP_LEFT', config.crop_left),
	):
		if value < 0:
			invalid.append(name)
	if config.frame_width - config.crop_left <= 0:
		invalid.append('CROP_LEFT')
	if config.frame_height - config.crop_top - config.crop_bottom <= 0:
		invalid.append('CROP_TOP/CROP_BOTTOM')
	if config.frame_rate <= 0:
		invalid.append('FRAME_RATE')
	# Deduplicate while keeping order
	return list(dict.fromkeys(invalid))


def resolve(env: Optional[Mapping[str, str]] = None) -> StreamConfig:
	"""Build a StreamConfig from `env`, reporting every missing required name at once."""
	if env is None:
		env = os.environ

	missing = [name for name in REQUIRED_VARIABLES if not _get_str(env, name)]
	if missing:
		raise ConfigurationError(missing=missing)

	frame_width, _ = _parse_int(env, 'SCREEN_WIDTH', 1280)
	frame_height, _ = _parse_int(env, 'SCREEN_HEIGHT', 720)
	crop_top, _ = _parse_int(env, 'CROP_TOP', 0)
	crop_bottom, _ = _parse_int(env, 'CROP_BOTTOM', 0)
	crop_left, _ = _parse_int(env, 'CROP_LEFT', 0)
	scroll_offset, _ = _parse_int(env, 'SCROLL_OFFSET', 0)
	frame_rate, _ = _parse_int(env, 'FRAME_RATE', 30)
	keyframe_interval, _ = _parse_int(env, 'KEYFRAME_INTERVAL', 60)
	audio_sample_rate, _ = _parse_int(env, 'AUDIO_SAMPLE_RATE', 44100)
	chrome_debug_port, _ = _parse_int(env, 'CHROME_DEBUG_PORT', 9222)
	audio_settle, _ = _parse_float(env, 'AUDIO_SETTLE_SECONDS', 1.0)
	display_settle, _ = _parse_float(env, 'DISPLAY_SETTLE_SECONDS', 2.0)
	media_settle, _ = _parse_float(env, 'MEDIA_SETTLE_SECONDS', 3.0)
	readiness_timeout, _ = _parse_float(env, 'READINESS_TIMEOUT_SECONDS', 15.0)
	navigation_timeout, _ = _parse_float(env, 'NAVIGATION_TIMEOUT_SECONDS', 60.0)
	restart_delay, _ = _parse_float(env, 'RESTART_DELAY_SECONDS', 5.0)
	backoff_factor, _ = _parse_float(env, 'RESTART_BACKOFF_FACTOR', 1.0)
	max_delay, _ = _parse_float(env, 'RESTART_MAX_DELAY_SECONDS', 60.0)
	max_failures, _ = _parse_int(env, 'RESTART_MAX_FAILURES', 0)
	failure_window, _ = _parse_float(env, 'RESTART_FAILURE_WINDOW_SECONDS', 300.0)

	config = StreamConfig(
		destination_base_url=_get_str(env, 'RTMP_URL'),
		stream_key=_get_str(env, 'RTMP_KEY'),
		source_page_url=_get_str(env, 'WEBSITE_URL'),
		display_id=normalize_display(_get_str(env, 'DISPLAY_NUM', ':99')),
		frame_width=frame_width,
		frame_height=frame_height,
		crop_top=crop_top,
		crop_bottom=crop_bottom,
		crop_left=crop_left,
		scroll_offset=scroll_offset,
		frame_rate=frame_rate,
		video_preset=_get_str(env, 'VIDEO_PRESET', 'veryfast'),
		video_maxrate=_get_str(env, 'VIDEO_MAXRATE', '3000k'),
		video_bufsize=_get_str(env, 'VIDEO_BUFSIZE', '6000k'),
		keyframe_interval=keyframe_interval,
		audio_bitrate=_get_str(env, 'AUDIO_BITRATE', '128k'),
		audio_sample_rate=audio_sample_rate,
		audio_sink_name=_get_str(env, 'AUDIO_SINK_NAME', 'VirtualSink'),
		chrome_executable_path=_get_str(env, 'CHROME_EXECUTABLE_PATH') or None,
		chrome_debug_port=chrome_debug_port,
		user_agent=_get_str(env, 'USER_AGENT', DEFAULT_USER_AGENT),
		audio_settle_seconds=max(audio_settle, 0.0),
		display_settle_seconds=max(display_settle, 0.0),
		media_settle_seconds=max(media_settle, 0.0),
		readiness_timeout_seconds=max(readiness_timeout, 0.0),
		navigation_timeout_seconds=max(navigation_timeout, 0.0),
		restart_delay_seconds=max(restart_delay, 0.0),
		restart_backoff_factor=max(backoff_factor, 1.0),
		restart_max_delay_seconds=max(max_delay, 0.0),
		restart_max_failures=max(max_failures, 0),
		restart_failure_window_seconds=max(failure_window, 0.0),
	)

	invalid = _validate_geometry(config)
	if invalid:
		raise ConfigurationError(invalid=invalid)
	return config


def log_config(config: StreamConfig) -> None:
	"""Log non-sensitive settings."""
	logger.info('Configuration:')
	logger.info('  Source page: %s', config.source_page_url)
	logger.info('  Destination: %s', config.redacted_destination)
	logger.info('  Stream key: %s', 'set' if config.stream_key else 'missing')
	logger.info('  Display: %s (%dx%dx24)', config.display_id, config.frame_width, config.frame_height)
	logger.info(
		'  Crop: top=%d bottom=%d left=%d, scroll offset %dpx',
		config.crop_top,
		config.crop_bottom,
		config.crop_left,
		config.scroll_offset,
	)
	logger.info(
		'  Encoder: %dfps preset=%s maxrate=%s bufsize=%s gop=%d audio=%s@%dHz',
		config.frame_rate,
		config.video_preset,
		config.video_maxrate,
		config.video_bufsize,
		config.keyframe_interval,
		config.audio_bitrate,
		config.audio_sample_rate,
	)
	logger.info(
		'  Restart: delay=%.1fs factor=%.1f max_delay=%.1fs max_failures=%s',
		config.restart_delay_seconds,
		config.restart_backoff_factor,
		config.restart_max_delay_seconds,
		config.restart_max_failures or 'unbounded',
	)
