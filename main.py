#!/usr/bin/env python3
"""Supabase Log Tailer — run from a checkout with `python main.py`."""

import sys

from log_tailer.cli import main

if __name__ == "__main__":
    sys.exit(main())
