"""
Test package for the TM Parking engine

unit/         - domain records, aggregates, strategies, config, messaging
integration/  - service, persistence adapters, commands and CLI together
"""

import sys
from pathlib import Path

# Allow running the suites from a source checkout without installing
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)
