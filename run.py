#!/usr/bin/env python3
"""Convenience runner for the patrol replay tool.

Usage:
    python run.py --fixes patrol.csv --catalog checkpoints.json --auto-confirm
"""
import logging
import sys

from patrol_tracker.main import main

if __name__ == "__main__":
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    sys.exit(main())
