"""Launch Chromium on the virtual display and prepare the page for capture."""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Optional

import aiohttp

from .bootstrap import DisplayHandle, wait_until_ready
from .config import StreamConfig
from .errors import RenderFatalError, RenderTransientError
from .log import SUCCESS
from .process import ManagedProcess

logger = logging.getLogger(__name__)

HIDE_CHROME_CSS = (
	'html, body { margin: 0 !important; padding: 0 !important; overflow: hidden !important; }\n'
	'::-webkit-scrollbar { display: none !important; }'
)


def chrome_args(config: StreamConfig, *, user_data_dir: Optional[Path] = None) -> list[str]:
	"""Command line switches shared by the system Chrome and Playwright launch paths."""
	args = [
		'--no-sandbox',
		'--disable-setuid-sandbox',
		f'--display={config.display_id}',
		'--kiosk',
		'--start-fullscreen',
		f'--window-size={config.frame_width},{config.frame_height}',
		'--window-position=0,0',
		'--disable-gpu',
		f'--user-agent={config.user_agent}',
		'--autoplay-policy=no-user-gesture-required',
		'--no-first-run',
		'--no-default-browser-check',
		'--disable-background-timer-throttling',
		'--disable-renderer-backgrounding',
		'--disable-backgrounding-occluded-windows',
		'--disable-features=TranslateUI',
		'--disable-infobars',
		'--disable-notifications',
		'--disable-dev-shm-usage',
		'--force-device-scale-factor=1',
	]
	if user_data_dir is not None:
		args.append(f'--remote-debugging-port={config.chrome_debug_port}')
		args.append(f'--user-data-dir={user_data_dir}')
	return args


class RenderSession:
	"""A connected browser with the target page open."""

	def __init__(
		self,
		*,
		browser: Any,
		page: Any,
		playwright: Any = None,
		chrome_process: Optional[ManagedProcess] = None,
		user_data_dir: Optional[Path] = None,
	) -> None:
		self.browser = browser
		self.page = page
		self._playwright = playwright
		self._chrome_process = chrome_process
		self._user_data_dir = user_data_dir
		self._connected = True
		browser.on('disconnected', self._on_disconnected)

	def _on_disconnected(self, *_: Any) -> None:
		if self._connected:
			logger.warning('Browser disconnected')
		self._connected = False

	def is_connected(self) -> bool:
		if not self._connected:
			return False
		if not self.browser.is_connected():
			return False
		if self._chrome_process is not None and not self._chrome_process.is_running():
			return False
		return True

	async def close(self) -> None:
		"""Release everything this session owns; every step is best-effort."""
		try:
			await self.browser.close()
		except Exception as error:
			logger.debug('Error closing browser: %s', error)
		if self._chrome_process is not None:
			try:
				await self._chrome_process.stop()
			except Exception as error:
				logger.debug('Error stopping Chrome: %s', error)
			self._chrome_process = None
		if self._playwright is not None:
			try:
				await self._playwright.stop()
			except Exception as error:
				logger.debug('Error stopping Playwright: %s', error)
			self._playwright = None
		if self._user_data_dir is not None:
			shutil.rmtree(self._user_data_dir, ignore_errors=True)
			self._user_data_dir = None
		self._connected = False


class RenderSessionManager:
	"""Start Chromium with remote debugging enabled and drive it over CDP."""

	def __init__(self, *, sleep=asyncio.sleep) -> None:
		self._sleep = sleep

	def _candidate_paths(self) -> list[Path]:
		system = platform.system()
		if system == 'Darwin':
			return [Path('/Applications/Google Chrome.app/Contents/MacOS/Google Chrome')]
		return [
			Path('/usr/bin/google-chrome-stable'),
			Path('/usr/bin/google-chrome'),
			Path('/usr/bin/chromium'),
			Path('/usr/bin/chromium-browser'),
		]

	def _find_chrome(self, config: StreamConfig) -> Optional[Path]:
		if config.chrome_executable_path:
			path = Path(config.chrome_executable_path)
			if path.exists():
				return path
			logger.warning('CHROME_EXECUTABLE_PATH %s does not exist, searching defaults', path)
		for path in self._candidate_paths():
			if path.exists():
				return path
		try:
			result = subprocess.run(['which', 'google-chrome'], capture_output=True, text=True, timeout=5, check=False)
			if result.returncode == 0:
				first = result.stdout.strip().splitlines()[0]
				if first and Path(first).exists():
					return Path(first)
		except Exception as error:
			logger.debug('Unable to locate Chrome in PATH: %s', error)
		return None

	async def _endpoint_ready(self, port: int) -> bool:
		version_url = f'http://127.0.0.1:{port}/json/version'
		try:
			async with aiohttp.ClientSession() as session:
				async with session.get(version_url, timeout=aiohttp.ClientTimeout(total=2)) as response:
					return response.status == 200
		except (aiohttp.ClientError, asyncio.TimeoutError):
			return False

	async def _start_playwright(self) -> Any:
		from playwright.async_api import async_playwright

		return await async_playwright().start()

	async def _open_browser(self, config: StreamConfig, display: DisplayHandle) -> RenderSession:
		playwright = await self._start_playwright()
		env = {**os.environ, 'DISPLAY': display.display_id}
		chrome_path = self._find_chrome(config)

		if chrome_path is None:
			logger.info("System Chrome not found, launching Playwright's bundled Chromium")
			try:
				browser = await playwright.chromium.launch(
					headless=False,
					args=chrome_args(config),
					env=env,
				)
				context = await browser.new_context(
					viewport={'width': config.frame_width, 'height': config.frame_height},
					user_agent=config.user_agent,
				)
				page = await context.new_page()
			except BaseException:
				await playwright.stop()
				raise
			return RenderSession(browser=browser, page=page, playwright=playwright)

		user_data_dir = Path(tempfile.mkdtemp(prefix='kioskcast-chrome-'))
		chrome_process: Optional[ManagedProcess] = None
		try:
			chrome_process = await ManagedProcess.spawn(
				'Chrome',
				str(chrome_path),
				*chrome_args(config, user_data_dir=user_data_dir),
				'about:blank',
				env=env,
			)

			async def endpoint_ready() -> bool:
				if not chrome_process.is_running():
					raise RenderFatalError(f'Chrome exited with status {chrome_process.returncode}')
				return await self._endpoint_ready(config.chrome_debug_port)

			await wait_until_ready(endpoint_ready, name='Chrome CDP endpoint', timeout=config.readiness_timeout_seconds)
			browser = await playwright.chromium.connect_over_cdp(f'http://127.0.0.1:{config.chrome_debug_port}')
			context = browser.contexts[0] if browser.contexts else await browser.new_context()
			page = context.pages[0] if context.pages else await context.new_page()
		except BaseException:
			if chrome_process is not None:
				await chrome_process.stop()
			await playwright.stop()
			shutil.rmtree(user_data_dir, ignore_errors=True)
			raise
		return RenderSession(
			browser=browser,
			page=page,
			playwright=playwright,
			chrome_process=chrome_process,
			user_data_dir=user_data_dir,
		)

	async def launch(self, config: StreamConfig, display: DisplayHandle) -> RenderSession:
		"""Open the page on `display` and run the post-load adjustments."""
		logger.info('Launching browser for %s...', config.source_page_url)
		session = await self._open_browser(config, display)
		try:
			await session.page.set_viewport_size({'width': config.frame_width, 'height': config.frame_height})
			await session.page.goto(
				config.source_page_url,
				wait_until='networkidle',
				timeout=config.navigation_timeout_seconds * 1000,
			)
		except Exception as error:
			await session.close()
			raise RenderFatalError(f'Failed to load {config.source_page_url}: {error}') from error
		except BaseException:
			await session.close()
			raise
		logger.log(SUCCESS, 'Page loaded.')

		try:
			await self.adjust_page(session, config)
		except BaseException:
			await session.close()
			raise
		return session

	async def adjust_page(self, session: RenderSession, config: StreamConfig) -> None:
		"""Post-load tweaks. A failing step is logged and the rest still run."""
		page = session.page
		cdp = None
		try:
			cdp = await page.context.new_cdp_session(page)
		except Exception as error:
			logger.warning('%s', RenderTransientError(f'CDP session unavailable: {error}'))

		async def disable_cache() -> None:
			if cdp is None:
				raise RenderTransientError('no CDP session')
			await cdp.send('Network.enable')
			await cdp.send('Network.setCacheDisabled', {'cacheDisabled': True})

		async def pin_user_agent() -> None:
			if cdp is None:
				raise RenderTransientError('no CDP session')
			await cdp.send('Network.setUserAgentOverride', {'userAgent': config.user_agent})

		async def settle_media() -> None:
			await self._sleep(config.media_settle_seconds)

		async def click_center() -> None:
			# Playback engines want a user gesture before they unmute
			await page.mouse.click(config.frame_width // 2, config.frame_height // 2)

		async def hide_chrome() -> None:
			await page.add_style_tag(content=HIDE_CHROME_CSS)

		async def scroll() -> None:
			await page.evaluate('(offset) => window.scrollTo(0, offset)', config.scroll_offset)

		steps = (
			('disable cache', disable_cache),
			('pin user agent', pin_user_agent),
			('media settle', settle_media),
			('synthetic click', click_center),
			('style injection', hide_chrome),
			('scroll offset', scroll),
		)
		for name, step in steps:
			try:
				await step()
				logger.debug('Post-load step done: %s', name)
			except Exception as error:
				logger.warning('Post-load step "%s" failed: %s', name, error)
