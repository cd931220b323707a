"""
Entry point for running hlsstreamer as a module: python -m hlsstreamer

    python -m hlsstreamer --detect
    python -m hlsstreamer episode1.mkv episode2.mkv
"""

import sys

from hlsstreamer.cli import main

if __name__ == "__main__":
    sys.exit(main())
