"""Render a web page into a virtual display and stream it to an RTMP endpoint."""

__all__ = [
	'config',
	'errors',
	'log',
	'process',
	'bootstrap',
	'render',
	'encoder',
	'supervisor',
]
