#!/usr/bin/env python3
"""

Usage:
    python Main.py [--server http://localhost:9000] [--peer-id MENUSYNC_xxx]

Or
    python -m menusync [--server http://localhost:9000]
"""

from menusync.__main__ import main

if __name__ == "__main__":
    main()
