"""Tests for the display and audio bootstrap sequence."""

import asyncio
import dataclasses
import logging

import pytest

from kioskcast import bootstrap
from kioskcast.errors import BootstrapError, DisplayBootstrapError, ReadinessTimeout
from kioskcast.process import CommandResult

from .conftest import wait_for_condition


class FakeManagedProcess:
	spawned = []

	def __init__(self, name, args):
		self.name = name
		self.args = args
		self.running = True
		self.stopped = False

	@classmethod
	async def spawn(cls, name, *args, env=None, capture_stderr=False):
		process = cls(name, args)
		cls.spawned.append(process)
		return process

	@property
	def returncode(self):
		return None if self.running else 1

	def is_running(self):
		return self.running

	async def stop(self, timeout=5.0):
		self.stopped = True
		self.running = False


@pytest.fixture
def commands(monkeypatch):
	"""Record every short-lived command; individual tests can make some fail."""
	calls = []
	failures = {}

	async def fake_run_command(*args, timeout=10.0, env=None):
		calls.append(args)
		outcome = failures.get(args[:2])
		if isinstance(outcome, BaseException):
			raise outcome
		if outcome is not None:
			return outcome
		return CommandResult(returncode=0, stdout='', stderr='')

	monkeypatch.setattr(bootstrap, 'run_command', fake_run_command)
	return calls, failures


@pytest.fixture
def xvfb(monkeypatch, tmp_path):
	class Spawner(FakeManagedProcess):
		spawned = []

	monkeypatch.setattr(bootstrap, 'ManagedProcess', Spawner)
	monkeypatch.setattr(bootstrap, 'X11_SOCKET_DIR', tmp_path)
	(tmp_path / 'X99').touch()
	return Spawner


class TestAudio:

	@pytest.mark.asyncio
	async def test_audio_commands_run_in_order(self, config, commands):
		calls, _ = commands

		handle = await bootstrap.start_audio(config)

		assert calls == [
			('pulseaudio', '-k'),
			('pulseaudio', '-D', '--exit-idle-time=-1', '--disallow-exit'),
			('pactl', 'info'),
			(
				'pactl',
				'load-module',
				'module-null-sink',
				'sink_name=VirtualSink',
				'sink_properties=device.description=VirtualSink',
			),
			('pactl', 'set-default-sink', 'VirtualSink'),
			('pactl', 'set-sink-mute', 'VirtualSink', '0'),
			('pactl', 'set-sink-volume', 'VirtualSink', '100%'),
		]
		assert handle.available is True
		assert handle.monitor_source == 'VirtualSink.monitor'

	@pytest.mark.asyncio
	async def test_missing_previous_daemon_is_not_an_error(self, config, commands):
		_, failures = commands
		failures[('pulseaudio', '-k')] = FileNotFoundError('pulseaudio')

		handle = await bootstrap.start_audio(config)

		assert handle.available is True

	@pytest.mark.asyncio
	async def test_sink_failure_is_downgraded_to_warning(self, config, commands, caplog):
		calls, failures = commands
		failures[('pactl', 'load-module')] = CommandResult(returncode=1, stdout='', stderr='Module load failed')

		with caplog.at_level(logging.WARNING):
			handle = await bootstrap.start_audio(config)

		assert handle.available is False
		assert 'PulseAudio setup failed' in caplog.text
		assert ('pactl', 'set-default-sink', 'VirtualSink') not in calls

	@pytest.mark.asyncio
	async def test_unreachable_daemon_is_downgraded(self, config, commands):
		_, failures = commands
		failures[('pactl', 'info')] = CommandResult(returncode=1, stdout='', stderr='Connection refused')

		handle = await bootstrap.start_audio(config)

		assert handle.available is False


class TestDisplay:

	@pytest.mark.asyncio
	async def test_xvfb_started_with_geometry(self, config, xvfb):
		handle = await bootstrap.start_display(config)

		assert handle.display_id == ':99'
		(process,) = xvfb.spawned
		assert process.args == ('Xvfb', ':99', '-screen', '0', '1280x720x24', '-nolisten', 'tcp')

	@pytest.mark.asyncio
	async def test_spawn_failure_is_fatal(self, config, monkeypatch):
		class Broken(FakeManagedProcess):
			@classmethod
			async def spawn(cls, name, *args, env=None, capture_stderr=False):
				raise FileNotFoundError('Xvfb')

		monkeypatch.setattr(bootstrap, 'ManagedProcess', Broken)

		with pytest.raises(DisplayBootstrapError):
			await bootstrap.start_display(config)

	@pytest.mark.asyncio
	async def test_missing_socket_times_out(self, config, xvfb, tmp_path):
		(tmp_path / 'X99').unlink()

		with pytest.raises(ReadinessTimeout):
			await bootstrap.start_display(config)

		assert xvfb.spawned[0].stopped is True

	@pytest.mark.asyncio
	async def test_early_exit_is_fatal(self, config, monkeypatch, tmp_path):
		class Dying(FakeManagedProcess):
			@classmethod
			async def spawn(cls, name, *args, env=None, capture_stderr=False):
				process = cls(name, args)
				process.running = False
				return process

		monkeypatch.setattr(bootstrap, 'ManagedProcess', Dying)
		monkeypatch.setattr(bootstrap, 'X11_SOCKET_DIR', tmp_path)

		with pytest.raises(DisplayBootstrapError, match='exited'):
			await bootstrap.start_display(config)

	@pytest.mark.asyncio
	async def test_teardown_stops_xvfb(self, config, xvfb):
		handle = await bootstrap.start_display(config)

		await bootstrap.teardown_display(handle)

		assert xvfb.spawned[0].stopped is True

	@pytest.mark.asyncio
	async def test_teardown_without_display_is_a_no_op(self):
		await bootstrap.teardown_display(None)


@pytest.mark.asyncio
async def test_audio_comes_up_before_display(config, commands, xvfb):
	calls, failures = commands
	failures[('pactl', 'load-module')] = CommandResult(returncode=1, stdout='', stderr='nope')

	display, audio = await bootstrap.bootstrap(config)

	assert calls[0] == ('pulseaudio', '-k')
	assert audio.available is False
	assert display.process is xvfb.spawned[0]


class TestAudioSteps:

	@pytest.mark.asyncio
	async def test_mute_failure_keeps_sink_and_runs_volume(self, config, commands, caplog):
		calls, failures = commands
		failures[('pactl', 'set-sink-mute')] = CommandResult(returncode=1, stdout='', stderr='No such entity')

		with caplog.at_level(logging.WARNING):
			handle = await bootstrap.start_audio(config)

		assert handle.available is True
		assert calls[-1] == ('pactl', 'set-sink-volume', 'VirtualSink', '100%')
		assert 'set-sink-mute' in caplog.text

	@pytest.mark.asyncio
	async def test_volume_failure_keeps_monitor_capture(self, config, commands):
		_, failures = commands
		failures[('pactl', 'set-sink-volume')] = CommandResult(returncode=1, stdout='', stderr='boom')

		handle = await bootstrap.start_audio(config)

		assert handle.available is True
		assert handle.monitor_source == 'VirtualSink.monitor'

	@pytest.mark.asyncio
	async def test_hung_daemon_start_is_downgraded(self, config, commands, caplog):
		calls, failures = commands
		failures[('pulseaudio', '-D')] = asyncio.TimeoutError()

		with caplog.at_level(logging.WARNING):
			handle = await bootstrap.start_audio(config)

		assert handle.available is False
		assert 'PulseAudio setup failed' in caplog.text
		assert not any(call[:2] == ('pactl', 'load-module') for call in calls)


class TestDisplayCancellation:

	@pytest.mark.asyncio
	async def test_cancel_during_settle_stops_xvfb(self, config, xvfb):
		slow = dataclasses.replace(config, display_settle_seconds=30.0)
		task = asyncio.create_task(bootstrap.start_display(slow))
		await wait_for_condition(lambda: xvfb.spawned)

		task.cancel()
		with pytest.raises(asyncio.CancelledError):
			await task

		assert xvfb.spawned[0].stopped is True

	@pytest.mark.asyncio
	async def test_readiness_timeout_is_its_own_bootstrap_error(self, config, xvfb, tmp_path):
		(tmp_path / 'X99').unlink()

		with pytest.raises(ReadinessTimeout) as excinfo:
			await bootstrap.start_display(config)

		assert isinstance(excinfo.value, BootstrapError)
		assert not isinstance(excinfo.value, DisplayBootstrapError)
		assert excinfo.value.probe == 'Xvfb'
