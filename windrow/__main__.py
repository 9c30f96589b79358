#!/usr/bin/env python3
"""
Windrow CLI entry point.

This module allows Windrow to be run as:
    python -m windrow

Or installed and run as:
    windrow
"""

from .cli import main

if __name__ == "__main__":
    main()
