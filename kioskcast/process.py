"""Async helpers for the external engines we drive as child processes."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT = 5.0


@dataclass
class CommandResult:
	returncode: int
	stdout: str
	stderr: str

	@property
	def ok(self) -> bool:
		return self.returncode == 0


async def run_command(*args: str, timeout: float = 10.0, env: Optional[Mapping[str, str]] = None) -> CommandResult:
	"""Run a short-lived command to completion.

	Raises OSError when the executable cannot be spawned and
	asyncio.TimeoutError when it outlives `timeout` (the child is killed).
	"""
	process = await asyncio.create_subprocess_exec(
		*args,
		stdin=asyncio.subprocess.DEVNULL,
		stdout=asyncio.subprocess.PIPE,
		stderr=asyncio.subprocess.PIPE,
		env=_merged_env(env),
	)
	try:
		stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
	except asyncio.TimeoutError:
		process.kill()
		await process.wait()
		raise
	return CommandResult(
		returncode=process.returncode if process.returncode is not None else -1,
		stdout=stdout.decode(errors='replace'),
		stderr=stderr.decode(errors='replace'),
	)


def _merged_env(env: Optional[Mapping[str, str]]) -> Optional[dict[str, str]]:
	if env is None:
		return None
	merged = dict(os.environ)
	merged.update(env)
	return merged


class ManagedProcess:
	"""A long-lived child process with a graceful terminate-then-kill stop."""

	def __init__(self, name: str, process: asyncio.subprocess.Process) -> None:
		self.name = name
		self.process = process

	@classmethod
	async def spawn(
		cls,
		name: str,
		*args: str,
		env: Optional[Mapping[str, str]] = None,
		capture_stderr: bool = False,
	) -> 'ManagedProcess':
		process = await asyncio.create_subprocess_exec(
			*args,
			stdin=asyncio.subprocess.DEVNULL,
			stdout=asyncio.subprocess.DEVNULL,
			stderr=asyncio.subprocess.PIPE if capture_stderr else asyncio.subprocess.DEVNULL,
			env=_merged_env(env),
		)
		logger.debug('Spawned %s (pid %s)', name, process.pid)
		return cls(name, process)

	@property
	def pid(self) -> Optional[int]:
		return self.process.pid

	@property
	def returncode(self) -> Optional[int]:
		return self.process.returncode

	def is_running(self) -> bool:
		return self.process.returncode is None

	async def wait(self) -> int:
		return await self.process.wait()

	async def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> None:
		if not self.is_running():
			return
		try:
			self.process.terminate()
		except ProcessLookupError:
			return
		try:
			await asyncio.wait_for(self.process.wait(), timeout=timeout)
		except asyncio.TimeoutError:
			logger.warning('%s did not exit after %.1fs, killing it', self.name, timeout)
			try:
				self.process.kill()
			except ProcessLookupError:
				return
			await self.process.wait()
