#!/usr/bin/env python3
"""
Development launcher for barkwatch.

- Loads config.yaml from the usual search paths
- Runs the barkwatch CLI in the foreground
- Ctrl-C stops the active pipeline cleanly
"""

import sys

from barkwatch.cli import main

if __name__ == "__main__":
    sys.exit(main())
