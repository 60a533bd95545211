#!/usr/bin/env python3
"""
CTC Router API Server Starter

Starts the CTC Router REST API server from a source checkout.
"""

import sys
import os

# Add the src path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from ctcrouter.ctcrouter_server import HOST, PORT, main as run_server

def main():
    print(f"Starting CTC Router API Server on {HOST}:{PORT}...")
    print(f"API index available at: http://localhost:{PORT}/")
    print(f"Session status at: http://localhost:{PORT}/session/status")
    print()

    run_server()
    return 0

if __name__ == "__main__":
    exit(main())
