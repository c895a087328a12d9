#!/usr/bin/env python3
"""
Fusion Scoring Engine - Application Entry Point.

============================================================
USAGE
============================================================
Direct execution:
    python app.py init-db
    python app.py score --subject S --integration I
    python app.py recalibrate --subject S --dry-run
    python app.py learn

Environment-based configuration (.env is loaded):
    FUSION_DATABASE_URL=postgresql://... python app.py learn

============================================================
"""

import sys

from fusion_engine.cli import main


if __name__ == "__main__":
    sys.exit(main())
