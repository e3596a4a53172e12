"""Log line format, the SUCCESS level and stream key redaction."""

from __future__ import annotations

import logging
from typing import Optional

SUCCESS = 25
REDACTED = '***'

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'
DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logging.addLevelName(SUCCESS, 'SUCCESS')
logging.addLevelName(logging.WARNING, 'WARN')


class SecretRedactionFilter(logging.Filter):
	"""Replace registered secrets in formatted log messages."""

	def __init__(self) -> None:
		super().__init__()
		self._secrets: set[str] = set()

	def add_secret(self, secret: Optional[str]) -> None:
		if secret:
			self._secrets.add(secret)

	def redact(self, text: str) -> str:
		for secret in self._secrets:
			text = text.replace(secret, REDACTED)
		return text

	def filter(self, record: logging.LogRecord) -> bool:
		if not self._secrets:
			return True
		message = record.getMessage()
		redacted = self.redact(message)
		if redacted != message:
			record.msg = redacted
			record.args = None
		return True


_redaction_filter = SecretRedactionFilter()


def register_secret(secret: Optional[str]) -> None:
	"""Never let `secret` reach a log handler, whichever logger emits it."""
	_redaction_filter.add_secret(secret)
	for handler in logging.getLogger().handlers:
		if _redaction_filter not in handler.filters:
			handler.addFilter(_redaction_filter)


def redact(text: str) -> str:
	return _redaction_filter.redact(text)


def setup_logging(level: str = 'INFO') -> None:
	resolved = logging.getLevelName(level.strip().upper()) if level else logging.INFO
	if not isinstance(resolved, int):
		resolved = logging.INFO
	logging.basicConfig(level=resolved, format=LOG_FORMAT, datefmt=DATE_FORMAT)
	logging.getLogger('kioskcast').setLevel(resolved)
	logging.getLogger('asyncio').setLevel(logging.WARNING)
	logging.getLogger('aiohttp').setLevel(logging.WARNING)
	logging.getLogger('playwright').setLevel(logging.WARNING)
	for handler in logging.getLogger().handlers:
		if _redaction_filter not in handler.filters:
			handler.addFilter(_redaction_filter)
