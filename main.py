#!/usr/bin/env python3
"""
Access Control - Main Entry Point
=================================

Permission engine with role resolution, conditional (ABAC) permissions
and a bounded, tamper-evident audit trail.

Usage:
    python main.py --help          # Show available commands
    python main.py init            # Initialize database
    python main.py demo            # Load demo data
    python main.py users show u1   # Show a user's effective permissions
    python main.py check ...       # Run a permission check
    python main.py audit verify    # Verify the mutation audit chain
"""

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cli.main import app

if __name__ == "__main__":
    app()
