#!/usr/bin/env python
"""
Run script for the volume bot.

This script sets up the logging directory and runs the command line.
"""

import os
import sys
from pathlib import Path

# Ensure the 'volumebot' package is importable from a source checkout
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

# Create logs directory if it doesn't exist
logs_dir = Path("logs")
logs_dir.mkdir(exist_ok=True)

from volumebot.main import run

if __name__ == "__main__":
    sys.exit(run())
