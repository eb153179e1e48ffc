#!/usr/bin/env python3
"""Audit a de-identified research export CSV before distribution."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ppc_backend.export_audit import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
