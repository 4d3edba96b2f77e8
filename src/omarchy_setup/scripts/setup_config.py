#!/usr/bin/env python3
"""
Omarchy configuration setup script, runnable from a source checkout.
"""

import sys
from pathlib import Path

# Make the src/ directory importable without installing the package
sys.path.append(str(Path(__file__).parent.parent.parent))

from omarchy_setup.config_repos import main

if __name__ == "__main__":
    main()
