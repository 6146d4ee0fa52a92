"""Pytest configuration for the NowPicks test-suite."""

from __future__ import annotations

import os
import sys
from pathlib import Path


# ``app`` lives at the project root; make it importable without an editable
# install.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Module-level settings are built on import; keep them on the development
# profile so the bundled config secret is accepted.
os.environ.setdefault("ENVIRONMENT", "development")
