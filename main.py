#!/usr/bin/env python3
"""
SubAlign Entry Point Script

This script initializes the CLI handler and runs the requested command.
"""

from subalign.cli import main

if __name__ == "__main__":
    main()
