#!/usr/bin/env python3
"""
Entry point for the standby promoter process.

Run this ON THE STANDBY, next to the postmaster it may promote.

Usage:
    python scripts/run_promoter.py --config config/promoter.yaml

    # Under a supervisor that should take the promoter down with it:
    python scripts/run_promoter.py --config config/promoter.yaml --supervisor-pid 4242

Exit codes: 0 promoted, 1 fatal, 3 stopped without promoting.
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from promoter.daemon import main


if __name__ == "__main__":
    sys.exit(main())
