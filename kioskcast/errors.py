"""Error taxonomy shared by the streaming components."""

from __future__ import annotations

from typing import Iterable, Optional


class KioskcastError(Exception):
	"""Base class for every error raised by kioskcast."""


class ConfigurationError(KioskcastError):
	"""Required settings are missing or invalid. Never retried."""

	def __init__(self, missing: Iterable[str] = (), invalid: Iterable[str] = ()) -> None:
		self.missing = list(missing)
		self.invalid = list(invalid)
		parts = []
		if self.missing:
			parts.append(f'Missing required environment variables: {", ".join(self.missing)}')
		if self.invalid:
			parts.append(f'Invalid settings: {", ".join(self.invalid)}')
		super().__init__('; '.join(parts) or 'Invalid configuration')


class BootstrapError(KioskcastError):
	"""An external engine could not be brought up."""


class DisplayBootstrapError(BootstrapError):
	"""The virtual display failed. Video capture is impossible without it."""


class AudioBootstrapError(BootstrapError):
	"""The audio daemon or sink failed. Downgraded to a warning by callers."""


class ReadinessTimeout(BootstrapError):
	"""An engine (PulseAudio, Xvfb, Chrome) did not expose its readiness signal in time."""

	def __init__(self, probe: str, timeout: float, detail: Optional[str] = None) -> None:
		self.probe = probe
		self.timeout = timeout
		message = f'{probe} not ready after {timeout:.1f}s'
		if detail:
			message = f'{message}: {detail}'
		super().__init__(message)


class RenderTransientError(KioskcastError):
	"""A post-load adjustment step failed; the session stays usable."""


class RenderFatalError(KioskcastError):
	"""The render session could not be launched or has gone away."""


class PipelineError(KioskcastError):
	"""The encoder failed to spawn or exited with a non-zero status."""
