"""Shared fixtures and engine doubles. No external binaries are ever executed."""

import asyncio

import pytest

from kioskcast.bootstrap import AudioSinkHandle, DisplayHandle
from kioskcast.config import StreamConfig


BASE_ENV = {
	'WEBSITE_URL': 'https://y/dash',
	'RTMP_URL': 'rtmp://x/live',
	'RTMP_KEY': 'abc-secret-key',
}


@pytest.fixture
def env():
	return dict(BASE_ENV)


@pytest.fixture
def config():
	return StreamConfig(
		destination_base_url='rtmp://x/live',
		stream_key='abc-secret-key',
		source_page_url='https://y/dash',
		audio_settle_seconds=0.0,
		display_settle_seconds=0.0,
		media_settle_seconds=0.0,
		readiness_timeout_seconds=0.0,
	)


@pytest.fixture
def display():
	return DisplayHandle(display_id=':99')


@pytest.fixture
def audio():
	return AudioSinkHandle(sink_name='VirtualSink', monitor_source='VirtualSink.monitor')


class FakeProcess:
	"""Stands in for asyncio.subprocess.Process."""

	def __init__(self, stderr_lines=()):
		self.pid = 4242
		self.returncode = None
		self._exited = asyncio.Event()
		self.stderr = asyncio.StreamReader()
		for line in stderr_lines:
			self.stderr.feed_data(line)
		self.terminated = False
		self.killed = False

	def exit(self, code):
		if self.returncode is None:
			self.returncode = code
		self.stderr.feed_eof()
		self._exited.set()

	async def wait(self):
		await self._exited.wait()
		return self.returncode

	def terminate(self):
		self.terminated = True
		self.exit(-15)

	def kill(self):
		self.killed = True
		self.exit(-9)


@pytest.fixture
def fake_process_factory():
	return FakeProcess


async def wait_for_condition(predicate, timeout=2.0):
	"""Spin the loop until `predicate()` holds."""
	loop = asyncio.get_running_loop()
	deadline = loop.time() + timeout
	while not predicate():
		if loop.time() > deadline:
			raise AssertionError('condition not met in time')
		await asyncio.sleep(0.001)
