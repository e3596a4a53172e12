"""Run the page-to-RTMP streamer."""

from kioskcast.main import main

if __name__ == "__main__":
	main()
