#!/usr/bin/env python3
"""
Policy Decision Point - Main Entry Point
========================================

Authorization decision point for a multi-region operations platform:
role-based permissions, regional boundaries with case-bound escalation,
PII sensitivity rules and MFA freshness/step-up.

Usage:
    python main.py --help                        # Show available commands
    python main.py init                          # Initialize database
    python main.py demo                          # Load demo catalog
    python main.py catalog list                  # List roles
    python main.py evaluate --request req.json   # Evaluate a request
    python main.py test scenario all             # Run policy scenarios
"""

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cli.main import app

if __name__ == "__main__":
    app()
