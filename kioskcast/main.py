"""Process entry point: stream a web page until stopped or fatally broken."""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from .log import setup_logging
from .supervisor import EXIT_OK, Supervisor

LOGGER = logging.getLogger(__name__)


async def run() -> int:
	supervisor = Supervisor(os.environ)
	return await supervisor.run()


def main() -> None:
	setup_logging(os.getenv('LOG_LEVEL', 'INFO'))
	try:
		exit_code = asyncio.run(run())
	except KeyboardInterrupt:
		LOGGER.info('Interrupted.')
		exit_code = EXIT_OK
	sys.exit(exit_code)


if __name__ == '__main__':
	main()
